from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterator, List, Sequence, Tuple, Union

import numpy as np
import torch
from PIL import Image
from torch.utils.data import DataLoader, Dataset

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".bmp"}
SPLITS = ("train", "val")


def list_images(folder: Union[str, Path]) -> List[Path]:
    folder = Path(folder)
    if not folder.exists():
        return []
    return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)


def _center_square(img: Image.Image) -> Image.Image:
    w, h = img.size
    s = min(w, h)
    left, top = (w - s) // 2, (h - s) // 2
    return img.crop((left, top, left + s, top + s))


def _to_tensor(img: Image.Image) -> torch.Tensor:
    arr = np.asarray(img, dtype=np.float32) / 255.0
    return torch.from_numpy(arr).permute(2, 0, 1).contiguous()


class PairImageDataset(Dataset):
    """(input, target) pairs from a folder of images.

    For ``task="style"`` the input is the target itself; for ``"upsample"`` it
    is the target bicubic-downsampled by `upsample_factor`.
    """

    def __init__(
        self,
        files: Sequence[Path],
        image_size: int = 256,
        task: str = "style",
        upsample_factor: int = 4,
    ):
        if task not in ("style", "upsample"):
            raise ValueError(f"task must be 'style' or 'upsample', got {task!r}")
        if task == "upsample" and image_size % upsample_factor != 0:
            raise ValueError(f"image_size {image_size} is not divisible by upsample_factor {upsample_factor}")
        self.files = list(files)
        self.image_size = image_size
        self.task = task
        self.upsample_factor = upsample_factor

    def __len__(self) -> int:
        return len(self.files)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        img = _center_square(Image.open(self.files[idx]).convert("RGB"))
        hr = img.resize((self.image_size, self.image_size), resample=Image.BICUBIC)
        if self.task == "upsample":
            s = self.image_size // self.upsample_factor
            lr = hr.resize((s, s), resample=Image.BICUBIC)
        else:
            lr = hr
        return _to_tensor(lr), _to_tensor(hr)


class ImageBatchLoader:
    """Endless train/val batches read from ``root/train`` and ``root/val``."""

    def __init__(
        self,
        root: Union[str, Path],
        batch_size: int = 4,
        image_size: int = 256,
        task: str = "style",
        upsample_factor: int = 4,
        max_train: int = -1,
        num_workers: int = 0,
    ):
        self.batch_size = batch_size
        self.num_workers = num_workers
        self.datasets: Dict[str, PairImageDataset] = {}
        for split in SPLITS:
            files = list_images(Path(root) / split)
            if split == "train" and max_train > 0:
                files = files[:max_train]
            if not files:
                raise FileNotFoundError(f"No images found in {Path(root) / split}")
            self.datasets[split] = PairImageDataset(files, image_size, task, upsample_factor)
        self.num_minibatches = {
            split: max(1, len(ds) // batch_size) for split, ds in self.datasets.items()
        }
        self._iters: Dict[str, Iterator] = {}

    def _make_loader(self, split: str) -> DataLoader:
        ds = self.datasets[split]
        return DataLoader(
            ds,
            batch_size=self.batch_size,
            shuffle=split == "train",
            num_workers=self.num_workers,
            drop_last=len(ds) >= self.batch_size,
        )

    def reset(self, split: str) -> None:
        self._iters[split] = iter(self._make_loader(split))

    def get_batch(self, split: str) -> Tuple[torch.Tensor, torch.Tensor]:
        if split not in self._iters:
            self.reset(split)
        try:
            return next(self._iters[split])
        except StopIteration:
            self.reset(split)
            return next(self._iters[split])
