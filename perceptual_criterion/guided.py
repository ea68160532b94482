"""Twin image/guide pipelines for mask-conditioned style losses.

The backbone is cut into segments that end at each style, content or
DeepDream checkpoint. Every segment runs the backbone layers on the image and
a matching guide path on the masks: pooling becomes average pooling so the
masks are downsampled smoothly, everything else is the identity. A guided
style node sits after each style segment and the last block concatenates both
branches, broadcasting batch-1 guides over the image batch.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from perceptual_criterion.layer_graph import LayerSpec, Stage, StageRole, locate
from perceptual_criterion.loss_nodes import ContentLoss, DeepDreamLoss, GuidedInput, LossType, StyleLossGuided

logger = logging.getLogger(__name__)


def guide_stage_for(module: nn.Module) -> nn.Module:
    if isinstance(module, (nn.MaxPool2d, nn.AvgPool2d)):
        return nn.AvgPool2d(
            kernel_size=module.kernel_size,
            stride=module.stride,
            padding=module.padding,
            ceil_mode=module.ceil_mode,
        )
    return nn.Identity()


class BranchSegment(nn.Module):
    def __init__(self, image_path: nn.Sequential, guide_path: nn.Sequential):
        super().__init__()
        self.image_path = image_path
        self.guide_path = guide_path

    def forward(self, x: GuidedInput) -> GuidedInput:
        image, guides = x
        return self.image_path(image), self.guide_path(guides)


class JoinBranches(nn.Module):
    def forward(self, x: GuidedInput) -> torch.Tensor:
        image, guides = x
        if guides.shape[0] != image.shape[0]:
            guides = guides.expand(image.shape[0], -1, -1, -1)
        return torch.cat([image, guides], dim=1)


class GuidedPipeline(nn.Module):
    """Sequence of branch segments and guided style nodes, ending in a join."""

    def __init__(self, blocks: Sequence[nn.Module]):
        super().__init__()
        self.blocks = nn.ModuleList(blocks)

    @property
    def segments(self) -> List[BranchSegment]:
        return [b for b in self.blocks if isinstance(b, BranchSegment)]

    def __len__(self) -> int:
        return len(self.blocks)

    def forward(self, x: GuidedInput) -> torch.Tensor:
        for block in self.blocks:
            x = block(x)
        return x


def _is_checkpoint(stage: Stage) -> bool:
    return stage.role is StageRole.LOSS and isinstance(stage.module, (ContentLoss, DeepDreamLoss))


def build_guided_pipeline(
    stages: Sequence[Stage],
    style_specs: Sequence[Tuple[LayerSpec, float]],
    loss_type: LossType,
    num_guides: Optional[int] = None,
    strict: bool = True,
) -> Tuple[GuidedPipeline, List[StyleLossGuided]]:
    """Rebuild `stages` as joined image/guide segments.

    Content and DeepDream nodes already spliced into `stages` are carried into
    the image path as-is. Layers past the last loss checkpoint are dropped.
    """
    anchors = [locate(stages, spec) for spec, _ in style_specs]
    if any(b <= a for a, b in zip(anchors, anchors[1:])):
        raise ValueError("guided_gram style layers must be listed in network order")
    remaining_checkpoints = sum(1 for s in stages if _is_checkpoint(s))

    blocks: List[nn.Module] = []
    style_nodes: List[StyleLossGuided] = []
    image_path: List[nn.Module] = []
    guide_path: List[nn.Module] = []
    next_style = 0

    def close_segment() -> None:
        if image_path:
            blocks.append(BranchSegment(nn.Sequential(*image_path), nn.Sequential(*guide_path)))
        image_path.clear()
        guide_path.clear()

    for idx, stage in enumerate(stages):
        if next_style >= len(anchors) and remaining_checkpoints == 0:
            break
        image_path.append(stage.module)
        guide_path.append(guide_stage_for(stage.module))

        if next_style < len(anchors) and idx == anchors[next_style]:
            weight = style_specs[next_style][1]
            node = StyleLossGuided(weight, loss_type, num_guides=num_guides, strict=strict)
            close_segment()
            blocks.append(node)
            style_nodes.append(node)
            next_style += 1

        if _is_checkpoint(stage):
            close_segment()
            remaining_checkpoints -= 1

    close_segment()
    blocks.append(JoinBranches())
    logger.debug("guided pipeline: %d blocks, %d style nodes", len(blocks), len(style_nodes))
    return GuidedPipeline(blocks), style_nodes
