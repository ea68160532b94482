"""Perceptual criterion built by splicing loss stages into a frozen CNN."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn

from perceptual_criterion.config import CriterionConfig
from perceptual_criterion.errors import GuideMismatchError, StaleForwardError
from perceptual_criterion.guided import GuidedPipeline, build_guided_pipeline
from perceptual_criterion.layer_graph import LayerSpec, Pipeline, as_builder
from perceptual_criterion.loss_nodes import (
    ContentLoss,
    DeepDreamLoss,
    HistLoss,
    LossMode,
    LossNode,
    LossType,
    NodeInput,
    StyleLoss,
)

logger = logging.getLogger(__name__)

LayerWeights = Sequence[Tuple[LayerSpec, float]]

AGG_TYPES = ("gram", "mean", "guided_gram")


class WeightPolicy(str, Enum):
    UNIFORM = "uniform"
    SCALE = "scale"


@dataclass
class LossTargets:
    content_target: Optional[NodeInput] = None
    style_target: Optional[NodeInput] = None
    hist_target: Optional[NodeInput] = None

    @classmethod
    def coerce(cls, targets: Union["LossTargets", Mapping[str, Any], None]) -> "LossTargets":
        if targets is None:
            return cls()
        if isinstance(targets, cls):
            return targets
        return cls(
            content_target=targets.get("content_target"),
            style_target=targets.get("style_target"),
            hist_target=targets.get("hist_target"),
        )


@dataclass
class _ForwardState:
    source: NodeInput
    leaf: torch.Tensor
    output: torch.Tensor
    losses: List[torch.Tensor]


def _prepare_input(input: NodeInput) -> Tuple[torch.Tensor, NodeInput]:
    if isinstance(input, (tuple, list)):
        image, guides = input
        leaf = image.detach().requires_grad_(True)
        return leaf, (leaf, guides.detach())
    leaf = input.detach().requires_grad_(True)
    return leaf, leaf


class PerceptualCriterion(nn.Module):
    """Content, style, histogram and DeepDream losses measured inside one CNN.

    Each ``*_specs`` argument is a sequence of ``(layer, weight)`` pairs. A
    layer is either a stage name (e.g. ``"relu4_2"``), a module class name, or
    a 1-based position in the network as it stands when that layer is
    resolved; positions shift as earlier loss stages are inserted.

    Typical use::

        crit = PerceptualCriterion(vgg, content_specs=[("relu4_2", 1.0)],
                                   style_specs=[("relu1_2", 5.0), ("relu2_2", 5.0)])
        crit.set_style_target(style_image)
        loss = crit.evaluate(output, {"content_target": batch})
        grad = crit.gradient(output)
    """

    def __init__(
        self,
        cnn: Any,
        content_specs: LayerWeights = (),
        style_specs: LayerWeights = (),
        hist_specs: LayerWeights = (),
        deepdream_specs: LayerWeights = (),
        agg_type: str = "gram",
        loss_type: Union[str, LossType] = LossType.L2,
        *,
        hist_bins: int = 256,
        num_guides: Optional[int] = None,
        weight_policy: Union[str, WeightPolicy] = WeightPolicy.UNIFORM,
        strict: bool = True,
    ):
        super().__init__()
        if agg_type not in AGG_TYPES:
            raise ValueError(f"agg_type must be one of {AGG_TYPES}, got {agg_type!r}")
        guided = agg_type == "guided_gram"
        if guided and hist_specs:
            raise ValueError("histogram layers are not supported with guided_gram style losses")
        if guided and num_guides is not None and num_guides < 1:
            raise GuideMismatchError(f"num_guides must be positive, got {num_guides}")

        self.agg_type = agg_type
        self.loss_type = LossType.parse(loss_type)
        self.weight_policy = WeightPolicy(weight_policy)

        if isinstance(cnn, nn.Module):
            cnn.eval()
            for p in cnn.parameters():
                p.requires_grad_(False)
        builder = as_builder(cnn)

        self.content_loss_layers: List[ContentLoss] = []
        self.style_loss_layers: List[LossNode] = []
        self.hist_loss_layers: List[HistLoss] = []
        self.deepdream_loss_layers: List[DeepDreamLoss] = []

        for layer, weight in content_specs:
            node = ContentLoss(weight, self.loss_type, strict=strict)
            builder.insert_after(layer, node)
            self.content_loss_layers.append(node)

        for layer, weight in deepdream_specs:
            node = DeepDreamLoss(weight, self.loss_type, strict=strict)
            builder.insert_after(layer, node)
            self.deepdream_loss_layers.append(node)

        if guided:
            net, style_nodes = build_guided_pipeline(
                builder.stages, style_specs, self.loss_type, num_guides=num_guides, strict=strict
            )
            self.style_loss_layers.extend(style_nodes)
        else:
            for layer, weight in style_specs:
                node = StyleLoss(weight, self.loss_type, agg_type=agg_type, strict=strict)
                builder.insert_after(layer, node)
                self.style_loss_layers.append(node)

            for layer, weight in hist_specs:
                node = HistLoss(weight, self.loss_type, bins=hist_bins, strict=strict)
                builder.insert_after(layer, node)
                self.hist_loss_layers.append(node)

            builder.trim()
            net = builder.build()

        self.net: Union[Pipeline, GuidedPipeline] = net
        self._base_weights = {
            "content": [float(w) for _, w in content_specs],
            "style": [float(w) for _, w in style_specs],
            "hist": [float(w) for _, w in hist_specs],
        }
        self.register_buffer("grad_net_output", None, persistent=False)
        self._forward_state: Optional[_ForwardState] = None
        self._reset_breakdown()
        logger.debug(
            "built criterion: %d content, %d style (%s), %d hist, %d deepdream nodes",
            len(self.content_loss_layers),
            len(self.style_loss_layers),
            agg_type,
            len(self.hist_loss_layers),
            len(self.deepdream_loss_layers),
        )

    def train(self, mode: bool = True) -> "PerceptualCriterion":
        super().train(mode)
        # The backbone is always used in inference mode.
        self.net.eval()
        return self

    @property
    def loss_nodes(self) -> List[LossNode]:
        return [
            *self.content_loss_layers,
            *self.style_loss_layers,
            *self.hist_loss_layers,
            *self.deepdream_loss_layers,
        ]

    # Target capture

    def set_style_target(self, target: NodeInput) -> None:
        self._set_modes(self.content_loss_layers, LossMode.NONE)
        self._set_modes(self.hist_loss_layers, LossMode.NONE)
        self._set_modes(self.deepdream_loss_layers, LossMode.NONE)
        self._set_modes(self.style_loss_layers, LossMode.CAPTURE)
        self._sweep(target)

    def set_hist_target(self, target: NodeInput) -> None:
        self._set_modes(self.content_loss_layers, LossMode.NONE)
        self._set_modes(self.style_loss_layers, LossMode.NONE)
        self._set_modes(self.deepdream_loss_layers, LossMode.NONE)
        self._set_modes(self.hist_loss_layers, LossMode.CAPTURE)
        self._sweep(target)

    def set_content_target(self, target: NodeInput) -> None:
        self._set_modes(self.style_loss_layers, LossMode.NONE)
        self._set_modes(self.hist_loss_layers, LossMode.NONE)
        self._set_modes(self.deepdream_loss_layers, LossMode.NONE)
        self._set_modes(self.content_loss_layers, LossMode.CAPTURE)
        self._sweep(target)

    # Weights

    def set_style_weight(self, weight: float) -> None:
        self._apply_weight(self.style_loss_layers, self._base_weights["style"], weight)

    def set_hist_weight(self, weight: float) -> None:
        self._apply_weight(self.hist_loss_layers, self._base_weights["hist"], weight)

    def set_content_weight(self, weight: float) -> None:
        self._apply_weight(self.content_loss_layers, self._base_weights["content"], weight)

    # Loss and gradient

    def evaluate(self, input: NodeInput, targets: Union[LossTargets, Mapping[str, Any], None] = None) -> float:
        """Run `input` through the network with every node in loss mode.

        Targets present in `targets` are captured first. Returns the summed
        loss and records the per-node breakdown on the criterion.
        """
        targets = LossTargets.coerce(targets)
        if targets.content_target is not None:
            self.set_content_target(targets.content_target)
        if targets.style_target is not None:
            self.set_style_target(targets.style_target)
        if targets.hist_target is not None:
            self.set_hist_target(targets.hist_target)

        self._set_modes(self.loss_nodes, LossMode.LOSS)

        leaf, net_input = _prepare_input(input)
        with torch.enable_grad():
            output = self.net(net_input)
        self._reset_grad_buffer(output)

        self.content_losses = [n.loss.item() for n in self.content_loss_layers]
        self.style_losses = [n.loss.item() for n in self.style_loss_layers]
        self.hist_losses = [n.loss.item() for n in self.hist_loss_layers]
        self.deepdream_losses = [n.loss.item() for n in self.deepdream_loss_layers]
        self.total_content_loss = sum(self.content_losses)
        self.total_style_loss = sum(self.style_losses)
        self.total_hist_loss = sum(self.hist_losses)
        self.total_deepdream_loss = sum(self.deepdream_losses)
        self.output = (
            self.total_content_loss + self.total_style_loss + self.total_hist_loss + self.total_deepdream_loss
        )

        self._forward_state = _ForwardState(
            source=input,
            leaf=leaf,
            output=output,
            losses=[n.loss for n in self.loss_nodes],
        )
        return self.output

    def forward(self, input: NodeInput, targets: Union[LossTargets, Mapping[str, Any], None] = None) -> float:
        return self.evaluate(input, targets)

    def gradient(self, input: NodeInput) -> torch.Tensor:
        """Gradient of the last `evaluate` result with respect to `input`.

        For a guided ``(image, guides)`` input the gradient is for the image.
        """
        state = self._forward_state
        if state is None or state.source is not input:
            raise StaleForwardError("gradient() must directly follow evaluate() on the same input")
        self._forward_state = None

        # The backbone output is seeded with zeros; only the loss stages contribute.
        outputs: List[torch.Tensor] = []
        grad_outputs: List[torch.Tensor] = []
        if state.output.requires_grad:
            outputs.append(state.output)
            grad_outputs.append(self.grad_net_output)
        for loss in state.losses:
            if loss.requires_grad:
                outputs.append(loss)
                grad_outputs.append(torch.ones_like(loss))
        if not outputs:
            return torch.zeros_like(state.leaf)

        (grad,) = torch.autograd.grad(outputs, state.leaf, grad_outputs=grad_outputs, allow_unused=True)
        if grad is None:
            return torch.zeros_like(state.leaf)
        return grad

    # Helpers

    def _set_modes(self, nodes: Sequence[LossNode], mode: LossMode) -> None:
        for node in nodes:
            node.set_mode(mode)

    def _sweep(self, target: NodeInput) -> None:
        with torch.no_grad():
            self.net(target)

    def _apply_weight(self, nodes: Sequence[LossNode], base: Sequence[float], weight: float) -> None:
        for node, base_weight in zip(nodes, base):
            if self.weight_policy is WeightPolicy.SCALE:
                node.strength = float(weight) * base_weight
            else:
                node.strength = float(weight)

    def _reset_grad_buffer(self, output: torch.Tensor) -> None:
        buf = self.grad_net_output
        if buf is None or buf.shape != output.shape or buf.dtype != output.dtype or buf.device != output.device:
            self.grad_net_output = torch.zeros_like(output, memory_format=torch.contiguous_format)
        else:
            buf.zero_()

    def _reset_breakdown(self) -> None:
        self.content_losses: List[float] = []
        self.style_losses: List[float] = []
        self.hist_losses: List[float] = []
        self.deepdream_losses: List[float] = []
        self.total_content_loss = 0.0
        self.total_style_loss = 0.0
        self.total_hist_loss = 0.0
        self.total_deepdream_loss = 0.0
        self.output = 0.0


class DepthCriterion(PerceptualCriterion):
    """Feature reconstruction loss inside a depth-estimation network."""

    def __init__(self, cnn: Any, depth_specs: LayerWeights, loss_type: Union[str, LossType] = LossType.L2, **kwargs):
        super().__init__(cnn, content_specs=depth_specs, loss_type=loss_type, **kwargs)

    @property
    def depth_losses(self) -> List[float]:
        return self.content_losses

    @property
    def total_depth_loss(self) -> float:
        return self.total_content_loss


def build_criterion(cnn: Any, config: CriterionConfig) -> PerceptualCriterion:
    return PerceptualCriterion(
        cnn,
        content_specs=config.content_specs,
        style_specs=config.style_specs,
        hist_specs=config.hist_specs,
        deepdream_specs=config.deepdream_specs,
        agg_type=config.agg_type,
        loss_type=config.loss_type,
        hist_bins=config.hist_bins,
        num_guides=config.num_guides,
        weight_policy=config.weight_policy,
    )
