"""Layer lookup and splicing for sequential feature networks.

A backbone is handled as an ordered list of `Stage`s while the criterion is
being assembled. Loss stages are spliced in after named (or numbered) layers,
the tail that feeds no loss is trimmed, and the result is frozen into a
`Pipeline` whose shape never changes afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, MutableSequence, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn

from perceptual_criterion.errors import AmbiguousLayerError, LayerNotFoundError

logger = logging.getLogger(__name__)

LayerSpec = Union[str, int]


class StageRole(str, Enum):
    BACKBONE = "backbone"
    LOSS = "loss"


@dataclass(frozen=True, eq=False)
class Stage:
    """One element of a pipeline: a module plus its name and role."""

    name: str
    module: nn.Module
    role: StageRole = StageRole.BACKBONE

    @property
    def type_name(self) -> str:
        return self.module.__class__.__name__

    def matches(self, identifier: str) -> bool:
        return identifier == self.name or identifier == self.type_name


def locate(stages: Sequence[Stage], layer_spec: LayerSpec) -> int:
    """Resolve `layer_spec` to a 0-based index into `stages`.

    A decimal spec is a 1-based position. Anything else must match exactly one
    stage by name or by module class name.
    """
    spec = str(layer_spec).strip()
    if spec.isdigit():
        pos = int(spec)
        if not 1 <= pos <= len(stages):
            raise LayerNotFoundError(f"Layer position {pos} is out of range (1..{len(stages)})")
        return pos - 1

    hits = [i for i, stage in enumerate(stages) if stage.matches(spec)]
    if not hits:
        raise LayerNotFoundError(f"No layer named {spec!r}")
    if len(hits) > 1:
        positions = ", ".join(str(i + 1) for i in hits)
        raise AmbiguousLayerError(f"Layer {spec!r} matches positions {positions}; use a position instead")
    return hits[0]


def insert_after(
    stages: MutableSequence[Stage],
    layer_spec: LayerSpec,
    node: nn.Module,
    name: Optional[str] = None,
) -> int:
    """Insert `node` as a loss stage right after `layer_spec`; returns its index."""
    anchor = locate(stages, layer_spec)
    if name is None:
        name = f"{stages[anchor].name}/{node.__class__.__name__}"
    stages.insert(anchor + 1, Stage(name=name, module=node, role=StageRole.LOSS))
    logger.debug("inserted %s at position %d", name, anchor + 2)
    return anchor + 1


def trim(stages: MutableSequence[Stage]) -> int:
    """Drop every stage after the last loss stage; returns how many were removed."""
    last = -1
    for i, stage in enumerate(stages):
        if stage.role is StageRole.LOSS:
            last = i
    removed = len(stages) - (last + 1)
    del stages[last + 1 :]
    if removed:
        logger.debug("trimmed %d trailing stages", removed)
    return removed


class Pipeline(nn.Module):
    """Frozen ordered sequence of stages."""

    def __init__(self, stages: Iterable[Stage]):
        super().__init__()
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self.body = nn.ModuleList([s.module for s in self._stages])

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def loss_stages(self) -> Tuple[Stage, ...]:
        return tuple(s for s in self._stages if s.role is StageRole.LOSS)

    def __len__(self) -> int:
        return len(self._stages)

    def __getitem__(self, idx: int) -> Stage:
        return self._stages[idx]

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def names(self) -> List[str]:
        return [s.name for s in self._stages]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for module in self.body:
            x = module(x)
        return x


class PipelineBuilder:
    """Mutable stage list used only while a criterion is being assembled."""

    def __init__(self, stages: Iterable[Stage] = ()):
        self._stages: List[Stage] = list(stages)

    @classmethod
    def from_sequential(cls, net: nn.Sequential) -> "PipelineBuilder":
        stages = []
        for name, module in net.named_children():
            # Loss stages hold on to the activations they observe.
            if getattr(module, "inplace", False):
                module.inplace = False
            stages.append(Stage(name=name, module=module))
        return cls(stages)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return tuple(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def locate(self, layer_spec: LayerSpec) -> int:
        return locate(self._stages, layer_spec)

    def insert_after(self, layer_spec: LayerSpec, node: nn.Module, name: Optional[str] = None) -> int:
        return insert_after(self._stages, layer_spec, node, name=name)

    def trim(self) -> int:
        return trim(self._stages)

    def build(self) -> Pipeline:
        return Pipeline(self._stages)


def as_builder(cnn: Union[nn.Sequential, Pipeline, PipelineBuilder, Sequence[Stage]]) -> PipelineBuilder:
    if isinstance(cnn, PipelineBuilder):
        return PipelineBuilder(cnn.stages)
    if isinstance(cnn, Pipeline):
        return PipelineBuilder(cnn.stages)
    if isinstance(cnn, nn.Sequential):
        return PipelineBuilder.from_sequential(cnn)
    return PipelineBuilder(cnn)
