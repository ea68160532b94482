"""Pixel preprocessing for the loss network, plus image load/save helpers.

``"vgg"`` is torchvision's ImageNet mean/std convention; ``"caffe"`` is the
original VGG convention (BGR, 0..255, mean pixel subtracted).
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np
import torch
from PIL import Image

VGG_MEAN = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1)
VGG_STD = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1)

CAFFE_MEAN_BGR = torch.tensor([103.939, 116.779, 123.68], dtype=torch.float32).view(1, 3, 1, 1)


def vgg_preprocess(img: torch.Tensor) -> torch.Tensor:
    return (img - VGG_MEAN.to(device=img.device)) / VGG_STD.to(device=img.device)


def vgg_deprocess(x: torch.Tensor) -> torch.Tensor:
    return x * VGG_STD.to(device=x.device) + VGG_MEAN.to(device=x.device)


def caffe_preprocess(img: torch.Tensor) -> torch.Tensor:
    bgr = img.flip(1) * 255.0
    return bgr - CAFFE_MEAN_BGR.to(device=img.device)


def caffe_deprocess(x: torch.Tensor) -> torch.Tensor:
    bgr = (x + CAFFE_MEAN_BGR.to(device=x.device)) / 255.0
    return bgr.flip(1)


PREPROCESSORS: Dict[str, Tuple[Callable[[torch.Tensor], torch.Tensor], Callable[[torch.Tensor], torch.Tensor]]] = {
    "vgg": (vgg_preprocess, vgg_deprocess),
    "caffe": (caffe_preprocess, caffe_deprocess),
}


def get_preprocessing(name: str) -> Tuple[Callable[[torch.Tensor], torch.Tensor], Callable[[torch.Tensor], torch.Tensor]]:
    if name not in PREPROCESSORS:
        raise ValueError(f'invalid preprocessing "{name}"; must be one of {sorted(PREPROCESSORS)}')
    return PREPROCESSORS[name]


def pil_to_tensor(img: Image.Image, device: Union[str, torch.device] = "cpu") -> torch.Tensor:
    arr = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
    t = torch.from_numpy(arr).permute(2, 0, 1).contiguous().unsqueeze(0)
    return t.to(device=device, dtype=torch.float32)


def tensor_to_pil(t: torch.Tensor) -> Image.Image:
    t = t.detach().cpu().clamp(0, 1)[0]
    arr = (t.permute(1, 2, 0).numpy() * 255.0 + 0.5).astype(np.uint8)
    return Image.fromarray(arr)


def load_image(
    path: Union[str, Path],
    size: Optional[int] = None,
    device: Union[str, torch.device] = "cpu",
) -> torch.Tensor:
    """Load an RGB image as a (1, 3, H, W) tensor in [0, 1].

    With `size`, the longer side is scaled to `size` keeping the aspect ratio.
    """
    img = Image.open(path).convert("RGB")
    if size is not None:
        w, h = img.size
        scale = size / float(max(w, h))
        img = img.resize((max(1, round(w * scale)), max(1, round(h * scale))), resample=Image.BICUBIC)
    return pil_to_tensor(img, device=device)


def save_image(t: torch.Tensor, path: Union[str, Path]) -> None:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tensor_to_pil(t).save(out_path)
