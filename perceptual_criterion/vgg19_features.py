"""Named VGG19 feature stack used as the loss network.

Layers carry caffe-style names (``conv1_1``, ``relu1_1``, ``pool1``, ...) so
loss layers can be requested by name. Pretrained weights come from
torchvision or from a saved ``features`` state dict, matched conv by conv.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import torch
import torch.nn as nn

VGG19_CFG: List[Union[int, str]] = [
    64,
    64,
    "M",
    128,
    128,
    "M",
    256,
    256,
    256,
    256,
    "M",
    512,
    512,
    512,
    512,
    "M",
    512,
    512,
    512,
    512,
    "M",
]


@dataclass(frozen=True)
class VGG19SliceSpec:
    """Which part of VGG19.features to build."""

    max_layer: Optional[str] = None
    ceil_mode: bool = False


def _named_layers(ceil_mode: bool = False) -> List[Tuple[str, nn.Module]]:
    layers: List[Tuple[str, nn.Module]] = []
    in_channels = 3
    block, conv = 1, 0
    for v in VGG19_CFG:
        if v == "M":
            layers.append((f"pool{block}", nn.MaxPool2d(kernel_size=2, stride=2, ceil_mode=ceil_mode)))
            block, conv = block + 1, 0
            continue
        out_channels = int(v)
        conv += 1
        layers.append((f"conv{block}_{conv}", nn.Conv2d(in_channels, out_channels, kernel_size=3, padding=1)))
        layers.append((f"relu{block}_{conv}", nn.ReLU(inplace=False)))
        in_channels = out_channels
    return layers


def vgg19_layer_names() -> List[str]:
    return [name for name, _ in _named_layers()]


def build_vgg19_features(spec: VGG19SliceSpec = VGG19SliceSpec()) -> nn.Sequential:
    """Build VGG19.features with named children, truncated after `spec.max_layer`."""
    layers = _named_layers(spec.ceil_mode)
    if spec.max_layer is not None:
        names = [name for name, _ in layers]
        if spec.max_layer not in names:
            raise ValueError(f"Unknown VGG19 layer {spec.max_layer!r}")
        layers = layers[: names.index(spec.max_layer) + 1]
    return nn.Sequential(OrderedDict(layers))


def _conv_params(state_dict: Mapping[str, torch.Tensor]) -> List[Tuple[torch.Tensor, torch.Tensor]]:
    prefixes: Dict[str, None] = {}
    for key, value in state_dict.items():
        if key.endswith(".weight") and value.dim() == 4:
            prefixes[key[: -len(".weight")]] = None
    return [(state_dict[f"{p}.weight"], state_dict[f"{p}.bias"]) for p in prefixes]


def load_conv_weights(features: nn.Sequential, state_dict: Mapping[str, torch.Tensor]) -> None:
    """Copy conv weights from `state_dict` into `features` in network order.

    Works for torchvision's numeric keys and for our named keys alike; extra
    convs in the state dict are ignored.
    """
    convs = [m for m in features if isinstance(m, nn.Conv2d)]
    params = _conv_params(state_dict)
    if len(params) < len(convs):
        raise ValueError(f"State dict has {len(params)} conv layers, network needs {len(convs)}")
    with torch.no_grad():
        for conv, (weight, bias) in zip(convs, params):
            if conv.weight.shape != weight.shape:
                raise ValueError(f"Conv weight shape {tuple(weight.shape)} != {tuple(conv.weight.shape)}")
            conv.weight.copy_(weight)
            conv.bias.copy_(bias)


def _torchvision_state_dict() -> Mapping[str, torch.Tensor]:
    from torchvision.models import VGG19_Weights, vgg19

    return vgg19(weights=VGG19_Weights.DEFAULT).features.state_dict()


def load_vgg19_features(
    weights: Optional[Union[str, Path]] = None,
    spec: VGG19SliceSpec = VGG19SliceSpec(),
    device: Union[str, torch.device] = "cpu",
) -> nn.Sequential:
    """Frozen, eval-mode VGG19 features with pretrained weights."""
    features = build_vgg19_features(spec)
    if weights is None:
        sd = _torchvision_state_dict()
    else:
        sd = torch.load(weights, map_location="cpu")
    load_conv_weights(features, sd)
    features = features.to(device).eval()
    for p in features.parameters():
        p.requires_grad_(False)
    return features
