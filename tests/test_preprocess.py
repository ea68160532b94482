import numpy as np
import pytest
import torch
from PIL import Image

from perceptual_criterion.preprocess import (
    CAFFE_MEAN_BGR,
    get_preprocessing,
    load_image,
    save_image,
    tensor_to_pil,
)


def test_get_preprocessing():
    preprocess, deprocess = get_preprocessing("vgg")
    img = torch.rand(1, 3, 4, 4)
    assert torch.allclose(deprocess(preprocess(img)), img, atol=1e-6)
    with pytest.raises(ValueError):
        get_preprocessing("imagenet")


def test_caffe_preprocess_is_bgr_mean_subtracted():
    preprocess, _ = get_preprocessing("caffe")
    img = torch.zeros(1, 3, 1, 1)
    img[:, 0] = 1.0
    out = preprocess(img).flatten()
    expected = torch.tensor([0.0, 0.0, 255.0]) - CAFFE_MEAN_BGR.flatten()
    assert torch.allclose(out, expected)


def test_load_image_scales_longer_side(tmp_path):
    path = tmp_path / "wide.png"
    Image.fromarray(np.zeros((20, 40, 3), dtype=np.uint8)).save(path)
    t = load_image(path, size=20)
    assert t.shape == (1, 3, 10, 20)
    assert load_image(path).shape == (1, 3, 20, 40)


def test_save_image_creates_parent(tmp_path):
    t = torch.full((1, 3, 2, 2), 2.0)
    path = tmp_path / "out" / "img.png"
    save_image(t, path)
    assert path.exists()
    assert tensor_to_pil(t).getpixel((0, 0)) == (255, 255, 255)
