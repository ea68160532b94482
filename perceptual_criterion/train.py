from __future__ import annotations

import argparse
import time
from dataclasses import replace
from typing import Optional

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from perceptual_criterion.config import CriterionConfig, find_vgg_weights, parse_layers
from perceptual_criterion.criterion import DepthCriterion, build_criterion
from perceptual_criterion.data import ImageBatchLoader
from perceptual_criterion.preprocess import get_preprocessing, load_image
from perceptual_criterion.training import TrainConfig, train
from perceptual_criterion.vgg19_features import VGG19SliceSpec, load_vgg19_features


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Train a feedforward style transfer / upsampling network with a perceptual loss.\n"
            "The network is loaded from --model (a torch.save'd nn.Module) and treated as a black box."
        )
    )
    # Generic
    p.add_argument("--model", type=str, default="", help="Saved nn.Module to train.")
    p.add_argument("--resume-from-checkpoint", type=str, default="", help="Checkpoint written by a previous run.")
    p.add_argument("--task", type=str, default="style", choices=["style", "upsample"])
    p.add_argument("--data-dir", type=str, required=True, help="Folder with train/ and val/ image subfolders.")
    p.add_argument("--image-size", type=int, default=256)
    p.add_argument("--batch-size", type=int, default=4)
    p.add_argument("--max-train", type=int, default=-1)
    p.add_argument("--upsample-factor", type=int, default=4)
    p.add_argument("--padding-type", type=str, default="reflect-start")
    p.add_argument("--preprocessing", type=str, default="vgg", choices=["vgg", "caffe"])
    p.add_argument("--loss-type", type=str, default="L2", choices=["L2", "SmoothL1"])
    p.add_argument("--vgg-weights", type=str, default="", help="VGG19 features .pth (default: torchvision).")
    p.add_argument("--device", type=str, default="cuda" if torch.cuda.is_available() else "cpu")

    # Loss weights
    p.add_argument("--pixel-loss-type", type=str, default="L1", choices=["L2", "L1", "SmoothL1"])
    p.add_argument("--pixel-loss-weight", type=float, default=0.0)
    p.add_argument("--percep-loss-weight", type=float, default=1.0)
    p.add_argument("--depth-loss-weight", type=float, default=0.0)
    p.add_argument("--tv-strength", type=float, default=1e-6)

    # Feature reconstruction
    p.add_argument("--content-layers", type=str, default="relu4_2")
    p.add_argument("--content-weights", type=str, default="1.0")

    # Style reconstruction
    p.add_argument("--style-image", type=str, default="images/styles/candy.jpg")
    p.add_argument("--style-image-guides", type=str, default="", help=".npy array of shape (K, H, W).")
    p.add_argument("--style-image-size", type=int, default=600)
    p.add_argument("--style-layers", type=str, default="relu1_2,relu2_2,relu3_2,relu4_2")
    p.add_argument("--style-weights", type=str, default="10.0")
    p.add_argument("--style-target-type", type=str, default="gram", choices=["gram", "mean", "guided_gram"])
    p.add_argument("--weight-policy", type=str, default="uniform", choices=["uniform", "scale"])

    # Histogram / DeepDream
    p.add_argument("--histogram-layers", type=str, default="")
    p.add_argument("--histogram-weights", type=str, default="")
    p.add_argument("--histogram-bins", type=int, default=256)
    p.add_argument("--deepdream-layers", type=str, default="")
    p.add_argument("--deepdream-weights", type=str, default="")

    # Depth
    p.add_argument("--depth-network", type=str, default="", help="Saved nn.Sequential depth network.")
    p.add_argument("--depth-layers", type=str, default="5")
    p.add_argument("--depth-weights", type=str, default="5.0")

    # Optimization
    p.add_argument("--num-iterations", type=int, default=40000)
    p.add_argument("--learning-rate", type=float, default=1e-3)
    p.add_argument("--lr-decay-every", type=int, default=4000)
    p.add_argument("--lr-decay-factor", type=float, default=0.8)
    p.add_argument("--weight-decay", type=float, default=0.0)

    # Checkpointing
    p.add_argument("--checkpoint-name", type=str, default="checkpoint")
    p.add_argument("--checkpoint-every", type=int, default=1000)
    p.add_argument("--num-val-batches", type=int, default=10)
    return p


def _load_module(path: str, device: torch.device) -> nn.Module:
    obj = torch.load(path, map_location=device, weights_only=False)
    model = obj["model"] if isinstance(obj, dict) else obj
    if not isinstance(model, nn.Module):
        raise SystemExit(f"{path} does not contain an nn.Module")
    return model.to(device)


def _load_guides(path: str) -> torch.Tensor:
    arr = np.load(path).astype(np.float32)
    if arr.ndim != 3:
        raise SystemExit(f"--style-image-guides must have shape (K, H, W), got {arr.shape}")
    g = torch.from_numpy(arr).unsqueeze(0)
    lo, hi = g.min(), g.max()
    return (g - lo) / (hi - lo) if hi > lo else torch.ones_like(g)


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)
    device = torch.device(args.device)

    model_path = args.resume_from_checkpoint or args.model
    if not model_path:
        raise SystemExit("Pass --model (a saved nn.Module) or --resume-from-checkpoint.")
    print(f"Loading model from {model_path}")
    model = _load_module(model_path, device)

    try:
        crit_config = CriterionConfig.from_strings(
            content_layers=args.content_layers,
            content_weights=args.content_weights,
            style_layers=args.style_layers if args.task == "style" else "",
            style_weights=args.style_weights if args.task == "style" else "",
            hist_layers=args.histogram_layers,
            hist_weights=args.histogram_weights,
            deepdream_layers=args.deepdream_layers,
            deepdream_weights=args.deepdream_weights,
            agg_type=args.style_target_type,
            loss_type=args.loss_type,
            hist_bins=args.histogram_bins,
            weight_policy=args.weight_policy,
        )
    except ValueError as e:
        raise SystemExit(f"Invalid layer/weight settings: {e}") from e

    preprocess, _ = get_preprocessing(args.preprocessing)
    guides = None
    if args.style_target_type == "guided_gram":
        if not args.style_image_guides:
            raise SystemExit("--style-target-type guided_gram needs --style-image-guides")
        guides = _load_guides(args.style_image_guides).to(device)
        crit_config = replace(crit_config, num_guides=guides.shape[1])

    percep_crit = None
    if args.percep_loss_weight > 0:
        vgg_weights = find_vgg_weights(args.vgg_weights or None)
        print(f"VGG19 weights: {vgg_weights or 'torchvision'}")
        vgg = load_vgg19_features(vgg_weights, VGG19SliceSpec(max_layer=crit_config.max_layer), device=device)
        percep_crit = build_criterion(vgg, crit_config).to(device)
        print(percep_crit.net)

        if args.task == "style":
            style = preprocess(load_image(args.style_image, args.style_image_size, device=device))
            if guides is not None:
                style_guides = F.interpolate(guides, size=style.shape[-2:], mode="bilinear", align_corners=False)
                percep_crit.set_style_target((style, style_guides))
            else:
                percep_crit.set_style_target(style)
                if crit_config.hist_specs:
                    percep_crit.set_hist_target(style)

    depth_crit = None
    if args.depth_loss_weight > 0:
        if not args.depth_network:
            raise SystemExit("--depth-loss-weight > 0 needs --depth-network")
        depth_layers, depth_weights = parse_layers(args.depth_layers, args.depth_weights)
        depth_net = _load_module(args.depth_network, device)
        depth_crit = DepthCriterion(depth_net, list(zip(depth_layers, depth_weights)), args.loss_type).to(device)

    loader = ImageBatchLoader(
        args.data_dir,
        batch_size=args.batch_size,
        image_size=args.image_size,
        task=args.task,
        upsample_factor=args.upsample_factor,
        max_train=args.max_train,
    )

    config = TrainConfig(
        num_iterations=args.num_iterations,
        learning_rate=args.learning_rate,
        lr_decay_every=args.lr_decay_every,
        lr_decay_factor=args.lr_decay_factor,
        weight_decay=args.weight_decay,
        pixel_loss_type=args.pixel_loss_type,
        pixel_loss_weight=args.pixel_loss_weight,
        percep_loss_weight=args.percep_loss_weight,
        depth_loss_weight=args.depth_loss_weight,
        tv_strength=args.tv_strength,
        padding_type=args.padding_type,
        preprocessing=args.preprocessing,
        checkpoint_name=args.checkpoint_name,
        checkpoint_every=args.checkpoint_every,
        num_val_batches=args.num_val_batches,
    )

    t0 = time.time()
    history = train(model, loader, config, percep_crit, depth_crit, guides=guides, device=device)
    dt = round(time.time() - t0, 2)
    final = history.train_loss[-1][1] if history.train_loss else float("nan")
    print(f"Done: {config.num_iterations} iterations, final loss={final:.4f}, t={dt}s")


if __name__ == "__main__":
    main()
