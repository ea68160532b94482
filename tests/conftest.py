from collections import OrderedDict

import pytest
import torch
import torch.nn as nn


def make_backbone(seed: int = 0) -> nn.Sequential:
    """A small VGG-like stack: 12 layers, two pooling stages."""
    torch.manual_seed(seed)
    return nn.Sequential(
        OrderedDict(
            [
                ("conv1_1", nn.Conv2d(3, 4, 3, padding=1)),
                ("relu1_1", nn.ReLU()),
                ("conv1_2", nn.Conv2d(4, 4, 3, padding=1)),
                ("relu1_2", nn.ReLU()),
                ("pool1", nn.MaxPool2d(2, 2)),
                ("conv2_1", nn.Conv2d(4, 8, 3, padding=1)),
                ("relu2_1", nn.ReLU()),
                ("conv2_2", nn.Conv2d(8, 8, 3, padding=1)),
                ("relu2_2", nn.ReLU()),
                ("pool2", nn.MaxPool2d(2, 2)),
                ("conv3_1", nn.Conv2d(8, 8, 3, padding=1)),
                ("relu3_1", nn.ReLU()),
            ]
        )
    )


def make_image(seed: int, batch: int = 1, size: int = 16) -> torch.Tensor:
    g = torch.Generator().manual_seed(seed)
    return torch.rand(batch, 3, size, size, generator=g)


@pytest.fixture
def backbone() -> nn.Sequential:
    return make_backbone()


@pytest.fixture
def image_a() -> torch.Tensor:
    return make_image(1)


@pytest.fixture
def image_b() -> torch.Tensor:
    return make_image(2)
