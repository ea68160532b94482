#!/usr/bin/env python3
"""Training dashboard: loss curves from a run's JSON history and a quick
stylize preview with its checkpoint.

Run with ``streamlit run perceptual_criterion/dashboard.py``.
"""

from __future__ import annotations

import io
import json
import sys
from pathlib import Path
from typing import Dict, List

import streamlit as st
import torch
from PIL import Image

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from perceptual_criterion.preprocess import get_preprocessing, pil_to_tensor, tensor_to_pil

_HISTORY_KEYS = ("train_loss", "content_loss", "style_loss", "depth_loss", "val_loss")


@st.cache_data(show_spinner=False)
def _load_history(json_path: str, mtime: float) -> Dict:
    return json.loads(Path(json_path).read_text())


@st.cache_resource(show_spinner=False)
def _load_model(pt_path: str, mtime: float, device_str: str) -> torch.nn.Module:
    ckpt = torch.load(pt_path, map_location=device_str, weights_only=False)
    model = ckpt["model"] if isinstance(ckpt, dict) else ckpt
    return model.to(device_str).eval()


def _series(points: List[List[float]]) -> Dict[str, List[float]]:
    return {"iteration": [p[0] for p in points], "loss": [p[1] for p in points]}


def _stylize(model: torch.nn.Module, img: Image.Image, preprocessing: str, device_str: str) -> Image.Image:
    preprocess, deprocess = get_preprocessing(preprocessing)
    x = preprocess(pil_to_tensor(img, device=device_str))
    with torch.no_grad():
        out = model(x)
    return tensor_to_pil(deprocess(out))


def main() -> None:
    st.set_page_config(page_title="Perceptual training", layout="wide")
    st.title("Perceptual loss training")

    with st.sidebar:
        st.header("Run")
        name = st.text_input("Checkpoint name", value="checkpoint")
        device_str = st.selectbox("Device", options=["cpu", "cuda"] if torch.cuda.is_available() else ["cpu"])
        st.button("Refresh")

    json_path = Path(f"{name}.json")
    pt_path = Path(f"{name}.pt")
    if not json_path.exists():
        st.info(f"No history at `{json_path}` yet. Checkpoints are written every --checkpoint-every iterations.")
        return

    history = _load_history(str(json_path), json_path.stat().st_mtime)
    opt: Dict = history.get("opt", {})
    st.caption(f"Iteration {history.get('iteration', '?')}")

    cols = st.columns(2)
    for i, key in enumerate(_HISTORY_KEYS):
        points = history.get(key) or []
        if not points:
            continue
        with cols[i % 2]:
            st.subheader(key.replace("_", " ").title())
            st.line_chart(_series(points), x="iteration", y="loss")

    with st.expander("Options"):
        st.json(opt)

    st.divider()
    st.header("Preview")
    if not pt_path.exists():
        st.warning(f"Missing checkpoint file: {pt_path}")
        return
    upload = st.file_uploader("Content image", type=["jpg", "jpeg", "png"])
    size = st.slider("Image size", min_value=128, max_value=1024, value=512, step=64)
    if upload is None:
        return

    img = Image.open(io.BytesIO(upload.getvalue())).convert("RGB")
    w, h = img.size
    scale = size / float(max(w, h))
    img = img.resize((max(1, round(w * scale)), max(1, round(h * scale))), resample=Image.BICUBIC)

    with st.spinner("Loading checkpoint…"):
        model = _load_model(str(pt_path), pt_path.stat().st_mtime, device_str)
    try:
        with st.spinner("Stylizing…"):
            out_img = _stylize(model, img, opt.get("preprocessing", "vgg"), device_str)
    except RuntimeError as e:
        st.error(f"Model failed on this input (guided models also need guide channels): {e}")
        return

    col1, col2 = st.columns(2)
    col1.image(img, caption="Input", use_container_width=True)
    col2.image(out_img, caption="Output", use_container_width=True)
    buf = io.BytesIO()
    out_img.save(buf, format="JPEG")
    st.download_button("Download output", data=buf.getvalue(), file_name="stylized.jpg", mime="image/jpeg")


if __name__ == "__main__":
    main()
