"""Training loop for a feedforward transformation network.

The network itself is treated as a black box: any module mapping a
preprocessed input batch to a preprocessed output batch. Perceptual gradients
come from `PerceptualCriterion.gradient` and are pushed into the network with
`torch.autograd.backward` together with the pixel and TV terms.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
from tqdm import tqdm

from perceptual_criterion.criterion import DepthCriterion, PerceptualCriterion
from perceptual_criterion.data import ImageBatchLoader
from perceptual_criterion.preprocess import get_preprocessing


@dataclass(frozen=True)
class TrainConfig:
    num_iterations: int = 40000
    learning_rate: float = 1e-3
    lr_decay_every: int = 4000
    lr_decay_factor: float = 0.8
    weight_decay: float = 0.0
    pixel_loss_type: str = "L1"
    pixel_loss_weight: float = 0.0
    percep_loss_weight: float = 1.0
    depth_loss_weight: float = 0.0
    tv_strength: float = 1e-6
    padding_type: str = "reflect-start"
    preprocessing: str = "vgg"
    checkpoint_name: str = "checkpoint"
    checkpoint_every: int = 1000
    num_val_batches: int = 10


@dataclass
class StepLosses:
    loss: float = 0.0
    pixel: float = 0.0
    percep: float = 0.0
    depth: float = 0.0
    tv: float = 0.0
    content: float = 0.0
    style: float = 0.0


@dataclass
class TrainHistory:
    train_loss: List[Tuple[int, float]] = field(default_factory=list)
    content_loss: List[Tuple[int, float]] = field(default_factory=list)
    style_loss: List[Tuple[int, float]] = field(default_factory=list)
    depth_loss: List[Tuple[int, float]] = field(default_factory=list)
    val_loss: List[Tuple[int, float]] = field(default_factory=list)


def make_pixel_criterion(loss_type: str) -> nn.Module:
    if loss_type == "L2":
        return nn.MSELoss()
    if loss_type == "L1":
        return nn.L1Loss()
    if loss_type == "SmoothL1":
        return nn.SmoothL1Loss()
    raise ValueError(f"Unknown pixel loss type {loss_type!r}")


def tv_loss(img: torch.Tensor) -> torch.Tensor:
    dx = img[:, :, :, 1:] - img[:, :, :, :-1]
    dy = img[:, :, 1:, :] - img[:, :, :-1, :]
    return dx.abs().mean() + dy.abs().mean()


def shave_y(y: torch.Tensor, out: torch.Tensor, padding_type: str) -> torch.Tensor:
    """Center-crop `y` to `out` when the network runs without padding."""
    if padding_type != "none":
        return y
    h, w = y.shape[-2:]
    hh, ww = out.shape[-2:]
    top, left = (h - hh) // 2, (w - ww) // 2
    return y[..., top : top + hh, left : left + ww]


def fit_guides(guides: torch.Tensor, like: torch.Tensor) -> torch.Tensor:
    """Resize (1, K, H, W) guides to `like`'s spatial size and batch."""
    g = F.interpolate(guides, size=like.shape[-2:], mode="bilinear", align_corners=False)
    return g.expand(like.shape[0], -1, -1, -1)


def train_step(
    model: nn.Module,
    x: torch.Tensor,
    y: torch.Tensor,
    config: TrainConfig,
    percep_crit: Optional[PerceptualCriterion] = None,
    depth_crit: Optional[DepthCriterion] = None,
    pixel_crit: Optional[nn.Module] = None,
    guides: Optional[torch.Tensor] = None,
) -> StepLosses:
    """Forward and backward for one batch; the caller steps the optimizer."""
    if guides is not None:
        x = torch.cat([x, fit_guides(guides, x)], dim=1)
    out = model(x)
    y = shave_y(y, out, config.padding_type)

    losses = StepLosses()
    grad_out = torch.zeros_like(out)
    terms: List[torch.Tensor] = []

    if pixel_crit is not None and config.pixel_loss_weight > 0:
        pixel = config.pixel_loss_weight * pixel_crit(out, y)
        terms.append(pixel)
        losses.pixel = pixel.item()

    if config.tv_strength > 0:
        tv = config.tv_strength * tv_loss(out)
        terms.append(tv)
        losses.tv = tv.item()

    if percep_crit is not None and config.percep_loss_weight > 0:
        if guides is not None:
            crit_input = (out, fit_guides(guides, out))
            target = (y, fit_guides(guides, y))
        else:
            crit_input, target = out, y
        losses.percep = config.percep_loss_weight * percep_crit.evaluate(crit_input, {"content_target": target})
        grad_out.add_(percep_crit.gradient(crit_input), alpha=config.percep_loss_weight)
        losses.content = percep_crit.total_content_loss
        losses.style = percep_crit.total_style_loss

    if depth_crit is not None and config.depth_loss_weight > 0:
        losses.depth = config.depth_loss_weight * depth_crit.evaluate(out, {"content_target": y})
        grad_out.add_(depth_crit.gradient(out), alpha=config.depth_loss_weight)

    torch.autograd.backward([out, *terms], grad_tensors=[grad_out, *[torch.ones_like(t) for t in terms]])
    losses.loss = losses.pixel + losses.tv + losses.percep + losses.depth
    return losses


def validate(
    model: nn.Module,
    loader: ImageBatchLoader,
    config: TrainConfig,
    percep_crit: Optional[PerceptualCriterion] = None,
    depth_crit: Optional[DepthCriterion] = None,
    pixel_crit: Optional[nn.Module] = None,
    guides: Optional[torch.Tensor] = None,
    device: torch.device = torch.device("cpu"),
) -> float:
    """Mean pixel, perceptual and depth loss over `config.num_val_batches` batches."""
    preprocess, _ = get_preprocessing(config.preprocessing)
    loader.reset("val")
    model.eval()
    total = 0.0
    for _ in range(config.num_val_batches):
        x, y = loader.get_batch("val")
        x, y = preprocess(x.to(device)), preprocess(y.to(device))
        if guides is not None:
            x = torch.cat([x, fit_guides(guides, x)], dim=1)
        with torch.no_grad():
            out = model(x)
        y = shave_y(y, out, config.padding_type)
        if pixel_crit is not None and config.pixel_loss_weight > 0:
            total += config.pixel_loss_weight * pixel_crit(out, y).item()
        if percep_crit is not None and config.percep_loss_weight > 0:
            if guides is not None:
                crit_input, target = (out, fit_guides(guides, out)), (y, fit_guides(guides, y))
            else:
                crit_input, target = out, y
            total += config.percep_loss_weight * percep_crit.evaluate(crit_input, {"content_target": target})
        if depth_crit is not None and config.depth_loss_weight > 0:
            total += config.depth_loss_weight * depth_crit.evaluate(out, {"content_target": y})
    model.train()
    return total / max(1, config.num_val_batches)


def save_checkpoint(model: nn.Module, config: TrainConfig, history: TrainHistory, iteration: int) -> Path:
    """Write ``<name>.pt`` (model + options) and ``<name>.json`` (loss history)."""
    stem = Path(config.checkpoint_name)
    stem.parent.mkdir(parents=True, exist_ok=True)
    pt_path = stem.with_name(stem.name + ".pt")
    torch.save({"opt": asdict(config), "model": model, "iteration": iteration}, pt_path)
    json_path = stem.with_name(stem.name + ".json")
    json_path.write_text(json.dumps({"opt": asdict(config), "iteration": iteration, **asdict(history)}, indent=2))
    return pt_path


def train(
    model: nn.Module,
    loader: ImageBatchLoader,
    config: TrainConfig,
    percep_crit: Optional[PerceptualCriterion] = None,
    depth_crit: Optional[DepthCriterion] = None,
    guides: Optional[torch.Tensor] = None,
    device: torch.device = torch.device("cpu"),
) -> TrainHistory:
    preprocess, _ = get_preprocessing(config.preprocessing)
    pixel_crit = make_pixel_criterion(config.pixel_loss_type) if config.pixel_loss_weight > 0 else None
    optimizer = torch.optim.Adam(model.parameters(), lr=config.learning_rate, weight_decay=config.weight_decay)
    scheduler = None
    if config.lr_decay_every > 0:
        scheduler = torch.optim.lr_scheduler.StepLR(
            optimizer, step_size=config.lr_decay_every, gamma=config.lr_decay_factor
        )

    history = TrainHistory()
    model.train()
    with tqdm(range(1, config.num_iterations + 1), desc="train", dynamic_ncols=True) as pbar:
        for t in pbar:
            x, y = loader.get_batch("train")
            x, y = preprocess(x.to(device)), preprocess(y.to(device))

            optimizer.zero_grad(set_to_none=True)
            losses = train_step(model, x, y, config, percep_crit, depth_crit, pixel_crit, guides)
            optimizer.step()
            if scheduler is not None:
                scheduler.step()

            history.train_loss.append((t, losses.loss))
            history.content_loss.append((t, losses.content))
            history.style_loss.append((t, losses.style))
            history.depth_loss.append((t, losses.depth))
            epoch = t / loader.num_minibatches["train"]
            pbar.set_postfix(
                epoch=f"{epoch:.2f}",
                loss=f"{losses.loss:.4f}",
                c=f"{losses.content:.4f}",
                s=f"{losses.style:.4f}",
                lr=f"{optimizer.param_groups[0]['lr']:.1e}",
            )

            if config.checkpoint_every > 0 and t % config.checkpoint_every == 0:
                val_loss = validate(model, loader, config, percep_crit, depth_crit, pixel_crit, guides, device)
                history.val_loss.append((t, val_loss))
                path = save_checkpoint(model, config, history, t)
                tqdm.write(f"Iteration {t}: val loss = {val_loss:.4f} (saved {path})")

    return history
