from __future__ import annotations

import argparse
from pathlib import Path

import torch

from perceptual_criterion.vgg19_features import VGG19SliceSpec, build_vgg19_features, load_conv_weights, vgg19_layer_names


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Export VGG19.features weights (no classifier) with named layers, optionally "
            "truncated after the deepest loss layer, so training runs need no download."
        )
    )
    p.add_argument("--out", type=str, required=True, help="Output .pth path.")
    p.add_argument(
        "--max-layer",
        type=str,
        default="relu4_2",
        help="Export up to and including this layer (e.g. relu4_2).",
    )
    return p


def main() -> None:
    args = build_parser().parse_args()

    try:
        from torchvision.models import VGG19_Weights, vgg19
    except ImportError as e:
        raise SystemExit("torchvision is required for this export script.") from e

    if args.max_layer not in vgg19_layer_names():
        raise SystemExit(f"Unknown layer {args.max_layer!r}; expected one of {', '.join(vgg19_layer_names())}")

    source = vgg19(weights=VGG19_Weights.DEFAULT).features.eval()
    features = build_vgg19_features(VGG19SliceSpec(max_layer=args.max_layer))
    load_conv_weights(features, source.state_dict())
    sd = features.state_dict()

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(sd, out_path)
    size_mb = out_path.stat().st_size / (1024 * 1024)
    convs = sum(1 for k in sd if k.endswith(".weight"))
    print(f"Saved: {out_path} ({size_mb:.1f} MB)  max_layer={args.max_layer}  convs={convs}")


if __name__ == "__main__":
    main()
