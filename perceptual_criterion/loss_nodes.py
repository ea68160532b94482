"""Pass-through loss stages spliced into a feature network.

Every node returns its input unchanged. What it does on the side depends on
the mode the criterion last gave it:

- ``none``: nothing.
- ``capture``: record the node's statistic of the input as the reference.
- ``loss``: measure the input's statistic against the reference and keep
  ``strength * distance`` in ``self.loss``.

The loss tensor stays attached to the autograd graph, so the criterion can
relay gradients from all nodes in one backward pass. ``backward`` exposes the
same gradient for a single node.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from perceptual_criterion.errors import CaptureMissingError, GuideMismatchError

GuidedInput = Tuple[torch.Tensor, torch.Tensor]
NodeInput = Union[torch.Tensor, GuidedInput]


class LossMode(str, Enum):
    NONE = "none"
    CAPTURE = "capture"
    LOSS = "loss"


class LossType(str, Enum):
    L2 = "L2"
    SMOOTH_L1 = "SmoothL1"

    @classmethod
    def parse(cls, value: Union[str, "LossType"]) -> "LossType":
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(f"Unknown loss type {value!r}; expected one of {[m.value for m in cls]}")


def distance(stat: torch.Tensor, reference: torch.Tensor, loss_type: LossType) -> torch.Tensor:
    if stat.shape != reference.shape:
        raise ValueError(f"Statistic shape {tuple(stat.shape)} does not match reference {tuple(reference.shape)}")
    if loss_type is LossType.SMOOTH_L1:
        return F.smooth_l1_loss(stat, reference, beta=1.0)
    return F.mse_loss(stat, reference)


def gram_matrix(feat: torch.Tensor) -> torch.Tensor:
    n, c, h, w = feat.shape
    f = feat.reshape(n, c, h * w)
    g = torch.bmm(f, f.transpose(1, 2))
    return g / float(c * h * w)


def channel_mean(feat: torch.Tensor) -> torch.Tensor:
    return feat.flatten(2).mean(dim=2)


def guided_gram_matrix(feat: torch.Tensor, guides: torch.Tensor) -> torch.Tensor:
    """Gram matrix per guide channel: (N, C, H, W) x (N, K, H, W) -> (N, K, C, C)."""
    n, c, h, w = feat.shape
    k = guides.shape[1]
    f = feat.reshape(n, 1, c, h * w) * guides.reshape(n, k, 1, h * w)
    g = torch.matmul(f, f.transpose(-1, -2))
    return g / float(c * h * w)


def rank_histogram(feat: torch.Tensor, bins: int) -> torch.Tensor:
    """Per-channel value distribution sampled at `bins` nearest-rank positions.

    This is the inverse CDF of each channel's activation histogram at a fixed
    bin count: (N, C, H, W) -> (N, C, bins).
    """
    values, _ = feat.flatten(2).sort(dim=-1)
    count = values.shape[-1]
    ranks = torch.linspace(0, count - 1, bins, device=feat.device).round().long()
    return values.index_select(-1, ranks)


def histogram_match(feat: torch.Tensor, reference: torch.Tensor, bins: int) -> torch.Tensor:
    """Remap every activation of `feat` onto the `reference` histogram.

    Each activation is shifted by the gap between the reference inverse CDF and
    `feat`'s own inverse CDF at its nearest rank. The result is detached and has
    the shape of `feat`; it equals `feat` when both histograms agree.
    """
    n = feat.shape[0]
    flat = feat.detach().flatten(2)
    values, order = flat.sort(dim=-1)
    count = values.shape[-1]
    ranks = torch.linspace(0, count - 1, bins, device=feat.device).round().long()
    gap = reference.expand(n, -1, -1) - values.index_select(-1, ranks)
    nearest = torch.linspace(0, bins - 1, count, device=feat.device).round().long()
    remapped = values + gap.index_select(-1, nearest)
    return torch.empty_like(flat).scatter_(-1, order, remapped).view_as(feat)


class LossNode(nn.Module):
    def __init__(
        self,
        strength: float = 1.0,
        loss_type: Union[str, LossType] = LossType.L2,
        strict: bool = True,
    ):
        super().__init__()
        self.strength = float(strength)
        self.loss_type = LossType.parse(loss_type)
        self.strict = strict
        self.mode = LossMode.NONE
        self.loss = torch.zeros(())
        self.register_buffer("target", None, persistent=False)

    def set_mode(self, mode: Union[str, LossMode]) -> None:
        self.mode = LossMode(mode)

    @property
    def captured(self) -> bool:
        return self.target is not None

    def forward(self, x: NodeInput) -> NodeInput:
        if self.mode is LossMode.CAPTURE:
            self.capture(x)
        elif self.mode is LossMode.LOSS:
            self.loss = self.measure(x)
        return x

    def statistic(self, x: NodeInput) -> torch.Tensor:
        raise NotImplementedError

    def capture(self, x: NodeInput) -> None:
        with torch.no_grad():
            self.target = self.statistic(x).detach().clone()

    def reference_for(self, stat: torch.Tensor) -> torch.Tensor:
        return self.target

    def measure(self, x: NodeInput) -> torch.Tensor:
        if self.target is None:
            if self.strict:
                raise CaptureMissingError(f"{self.__class__.__name__} has no captured target")
            return self._features(x).new_zeros(())
        stat = self.statistic(x)
        return self.strength * distance(stat, self.reference_for(stat), self.loss_type)

    def backward(self, x: NodeInput, grad_output: torch.Tensor) -> torch.Tensor:
        """Return `grad_output` plus this node's own gradient with respect to `x`."""
        if self.mode is not LossMode.LOSS:
            return grad_output
        with torch.enable_grad():
            leaf, node_input = self._grad_leaf(x)
            loss = self.measure(node_input)
            if not loss.requires_grad:
                return grad_output
            (grad,) = torch.autograd.grad(loss, leaf)
        return grad_output + grad

    def _features(self, x: NodeInput) -> torch.Tensor:
        return x

    def _grad_leaf(self, x: NodeInput) -> Tuple[torch.Tensor, NodeInput]:
        leaf = x.detach().requires_grad_(True)
        return leaf, leaf

    def extra_repr(self) -> str:
        return f"strength={self.strength}, loss_type={self.loss_type.value}, mode={self.mode.value}"


class ContentLoss(LossNode):
    """Compares raw activations with those of the content target batch."""

    def statistic(self, x: torch.Tensor) -> torch.Tensor:
        return x


def _expand_reference(reference: torch.Tensor, stat: torch.Tensor) -> torch.Tensor:
    if reference.shape[1:] != stat.shape[1:]:
        raise ValueError(
            f"Statistic shape {tuple(stat.shape[1:])} does not match reference {tuple(reference.shape[1:])}"
        )
    return reference.expand_as(stat)


class StyleLoss(LossNode):
    """Compares Gram matrices (or channel means) with a single style image."""

    def __init__(
        self,
        strength: float = 1.0,
        loss_type: Union[str, LossType] = LossType.L2,
        agg_type: str = "gram",
        strict: bool = True,
    ):
        super().__init__(strength, loss_type, strict)
        if agg_type not in ("gram", "mean"):
            raise ValueError(f"Unsupported style aggregation {agg_type!r}")
        self.agg_type = agg_type

    def statistic(self, x: torch.Tensor) -> torch.Tensor:
        if self.agg_type == "mean":
            return channel_mean(x)
        return gram_matrix(x)

    def capture(self, x: torch.Tensor) -> None:
        # Only the first image of a target batch is used as the style.
        super().capture(x[:1])

    def reference_for(self, stat: torch.Tensor) -> torch.Tensor:
        return _expand_reference(self.target, stat)

    def extra_repr(self) -> str:
        return f"{super().extra_repr()}, agg_type={self.agg_type}"


class StyleLossGuided(LossNode):
    """Style loss restricted to the regions selected by each guide channel.

    Input and output are ``(features, guides)`` pairs; guides must share the
    spatial size of the features.
    """

    def __init__(
        self,
        strength: float = 1.0,
        loss_type: Union[str, LossType] = LossType.L2,
        num_guides: Optional[int] = None,
        strict: bool = True,
    ):
        super().__init__(strength, loss_type, strict)
        self.num_guides = num_guides

    def statistic(self, x: GuidedInput) -> torch.Tensor:
        features, guides = x
        if guides.dim() != 4 or guides.shape[-2:] != features.shape[-2:]:
            raise GuideMismatchError(
                f"Guide shape {tuple(guides.shape)} does not line up with features {tuple(features.shape)}"
            )
        if self.num_guides is not None and guides.shape[1] != self.num_guides:
            raise GuideMismatchError(f"Expected {self.num_guides} guide channels, got {guides.shape[1]}")
        if guides.shape[0] not in (1, features.shape[0]):
            raise GuideMismatchError(f"Guide batch {guides.shape[0]} does not match feature batch {features.shape[0]}")
        guides = guides.expand(features.shape[0], -1, -1, -1)
        return guided_gram_matrix(features, guides)

    def capture(self, x: GuidedInput) -> None:
        features, guides = x
        super().capture((features[:1], guides[:1]))

    def reference_for(self, stat: torch.Tensor) -> torch.Tensor:
        if self.target.shape[1] != stat.shape[1]:
            raise GuideMismatchError(
                f"Captured {self.target.shape[1]} guide channels but got {stat.shape[1]}"
            )
        return _expand_reference(self.target, stat)

    def _features(self, x: GuidedInput) -> torch.Tensor:
        return x[0]

    def _grad_leaf(self, x: GuidedInput) -> Tuple[torch.Tensor, GuidedInput]:
        features, guides = x
        leaf = features.detach().requires_grad_(True)
        return leaf, (leaf, guides.detach())


class HistLoss(LossNode):
    """Matches per-channel activation histograms of a single target image.

    The reference is the target's `bins`-point inverse CDF per channel. Every
    activation is compared with its value remapped onto that histogram, so the
    gradient reaches all of them.
    """

    def __init__(
        self,
        strength: float = 1.0,
        loss_type: Union[str, LossType] = LossType.L2,
        bins: int = 256,
        strict: bool = True,
    ):
        super().__init__(strength, loss_type, strict)
        if bins < 2:
            raise ValueError("HistLoss needs at least 2 bins")
        self.bins = int(bins)

    def statistic(self, x: torch.Tensor) -> torch.Tensor:
        return rank_histogram(x, self.bins)

    def capture(self, x: torch.Tensor) -> None:
        super().capture(x[:1])

    def measure(self, x: torch.Tensor) -> torch.Tensor:
        if self.target is None:
            return super().measure(x)
        if self.target.shape[1] != x.shape[1]:
            raise ValueError(f"Captured {self.target.shape[1]} channels but got {x.shape[1]}")
        matched = histogram_match(x, self.target, self.bins)
        return self.strength * distance(x, matched, self.loss_type)

    def extra_repr(self) -> str:
        return f"{super().extra_repr()}, bins={self.bins}"


class DeepDreamLoss(LossNode):
    """Rewards large activations; there is no reference to capture."""

    def capture(self, x: torch.Tensor) -> None:
        return None

    def measure(self, x: torch.Tensor) -> torch.Tensor:
        return -self.strength * x.pow(2).mean()
