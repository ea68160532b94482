from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from perceptual_criterion.vgg19_features import vgg19_layer_names

VGG_WEIGHTS_ENV = "PERCEPTUAL_VGG_WEIGHTS"
VGG_WEIGHTS_FILENAME = "vgg19_features.pth"

LayerWeights = Tuple[Tuple[str, float], ...]


def parse_layers(layer_string: str, weight_string: str) -> Tuple[List[str], List[float]]:
    """Split comma-separated layer and weight lists.

    A single weight is repeated for every layer.
    """
    layers = [s.strip() for s in layer_string.split(",") if s.strip()]
    weights = [float(s) for s in weight_string.split(",") if s.strip()]
    if len(weights) == 1 and len(layers) > 1:
        weights = weights * len(layers)
    if len(weights) != len(layers):
        raise ValueError(f"Got {len(layers)} layers but {len(weights)} weights")
    return layers, weights


def _pairs(layer_string: str, weight_string: str) -> LayerWeights:
    layers, weights = parse_layers(layer_string, weight_string)
    return tuple(zip(layers, weights))


@dataclass(frozen=True)
class CriterionConfig:
    """Layer selection and loss options for a perceptual criterion."""

    content_specs: LayerWeights = (("relu4_2", 1.0),)
    style_specs: LayerWeights = (("relu1_2", 10.0), ("relu2_2", 10.0), ("relu3_2", 10.0), ("relu4_2", 10.0))
    hist_specs: LayerWeights = ()
    deepdream_specs: LayerWeights = ()
    agg_type: str = "gram"
    loss_type: str = "L2"
    hist_bins: int = 256
    num_guides: Optional[int] = None
    weight_policy: str = "uniform"

    @classmethod
    def from_strings(
        cls,
        content_layers: str = "relu4_2",
        content_weights: str = "1.0",
        style_layers: str = "relu1_2,relu2_2,relu3_2,relu4_2",
        style_weights: str = "10.0",
        hist_layers: str = "",
        hist_weights: str = "",
        deepdream_layers: str = "",
        deepdream_weights: str = "",
        **kwargs,
    ) -> "CriterionConfig":
        return cls(
            content_specs=_pairs(content_layers, content_weights),
            style_specs=_pairs(style_layers, style_weights),
            hist_specs=_pairs(hist_layers, hist_weights),
            deepdream_specs=_pairs(deepdream_layers, deepdream_weights),
            **kwargs,
        )

    @property
    def max_layer(self) -> Optional[str]:
        """Deepest named layer any loss needs, when every layer is given by name."""
        names = [layer for layer, _ in self.content_specs + self.style_specs + self.hist_specs + self.deepdream_specs]
        if not names or any(n.isdigit() for n in names):
            return None
        order = vgg19_layer_names()
        if any(n not in order for n in names):
            return None
        return max(names, key=order.index)


def repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


def find_vgg_weights(explicit: Optional[str] = None) -> Optional[Path]:
    """Locate a saved VGG19 features state dict, or None to use torchvision's."""
    if explicit:
        p = Path(explicit).expanduser()
        if not p.exists():
            raise FileNotFoundError(f"VGG weights file not found: {p}")
        return p
    env = os.environ.get(VGG_WEIGHTS_ENV)
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p
    for p in (repo_root() / VGG_WEIGHTS_FILENAME, Path.cwd() / VGG_WEIGHTS_FILENAME):
        if p.exists():
            return p
    return None
