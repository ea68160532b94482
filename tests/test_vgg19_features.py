import pytest
import torch
import torch.nn as nn

from perceptual_criterion.vgg19_features import (
    VGG19SliceSpec,
    build_vgg19_features,
    load_conv_weights,
    load_vgg19_features,
    vgg19_layer_names,
)


def test_layer_names():
    names = vgg19_layer_names()
    assert len(names) == 37
    assert names[:5] == ["conv1_1", "relu1_1", "conv1_2", "relu1_2", "pool1"]
    assert names.index("relu4_2") == 22
    assert names[-1] == "pool5"


def test_build_truncates_after_max_layer():
    features = build_vgg19_features(VGG19SliceSpec(max_layer="relu2_1"))
    assert [name for name, _ in features.named_children()][-1] == "relu2_1"
    assert len(features) == 7
    with pytest.raises(ValueError):
        build_vgg19_features(VGG19SliceSpec(max_layer="relu9_9"))


def test_load_conv_weights_from_numeric_keys():
    source = nn.Sequential(*build_vgg19_features(VGG19SliceSpec(max_layer="relu2_1")).children())
    target = build_vgg19_features(VGG19SliceSpec(max_layer="relu1_2"))
    load_conv_weights(target, source.state_dict())
    assert torch.equal(target.conv1_1.weight, source[0].weight)
    assert torch.equal(target.conv1_2.bias, source[2].bias)


def test_load_conv_weights_needs_enough_convs():
    source = build_vgg19_features(VGG19SliceSpec(max_layer="relu1_2"))
    target = build_vgg19_features(VGG19SliceSpec(max_layer="relu2_1"))
    with pytest.raises(ValueError):
        load_conv_weights(target, source.state_dict())


def test_load_conv_weights_shape_mismatch():
    source = nn.Sequential(nn.Conv2d(3, 8, 3), nn.Conv2d(8, 8, 3))
    target = build_vgg19_features(VGG19SliceSpec(max_layer="relu1_2"))
    with pytest.raises(ValueError):
        load_conv_weights(target, source.state_dict())


def test_load_from_file_is_frozen(tmp_path):
    source = build_vgg19_features(VGG19SliceSpec(max_layer="pool1"))
    path = tmp_path / "vgg.pth"
    torch.save(source.state_dict(), path)
    features = load_vgg19_features(path, VGG19SliceSpec(max_layer="relu1_2"))
    assert not features.training
    assert all(not p.requires_grad for p in features.parameters())
    assert torch.equal(features.conv1_2.weight, source.conv1_2.weight)
