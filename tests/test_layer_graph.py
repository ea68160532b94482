import pytest
import torch
import torch.nn as nn

from perceptual_criterion.errors import AmbiguousLayerError, LayerNotFoundError
from perceptual_criterion.layer_graph import (
    PipelineBuilder,
    Stage,
    StageRole,
    as_builder,
    insert_after,
    locate,
    trim,
)
from perceptual_criterion.loss_nodes import ContentLoss


def _stages(backbone):
    return list(PipelineBuilder.from_sequential(backbone).stages)


def test_locate_by_name_and_position(backbone):
    stages = _stages(backbone)
    assert locate(stages, "conv1_1") == 0
    assert locate(stages, "pool2") == 9
    assert locate(stages, "1") == 0
    assert locate(stages, 12) == 11


@pytest.mark.parametrize("spec", ["0", "13", "conv9_9"])
def test_locate_missing(backbone, spec):
    with pytest.raises(LayerNotFoundError):
        locate(_stages(backbone), spec)


@pytest.mark.parametrize("spec", ["ReLU", "MaxPool2d", "Conv2d"])
def test_locate_type_name_is_ambiguous(backbone, spec):
    with pytest.raises(AmbiguousLayerError):
        locate(_stages(backbone), spec)


def test_locate_unique_type_name():
    stages = [Stage("a", nn.Conv2d(1, 1, 1)), Stage("b", nn.Tanh())]
    assert locate(stages, "Tanh") == 1


@pytest.mark.parametrize("spec", ["conv1_1", "5", "relu3_1", "12"])
def test_insert_after_places_node_right_after_anchor(backbone, spec):
    stages = _stages(backbone)
    anchor = locate(stages, spec)
    node = ContentLoss()
    idx = insert_after(stages, spec, node)
    assert len(stages) == 13
    assert idx == anchor + 1
    assert stages[idx].module is node
    assert stages[idx].role is StageRole.LOSS
    assert stages[idx].name == f"{stages[anchor].name}/ContentLoss"


def test_positions_resolve_against_current_pipeline(backbone):
    stages = _stages(backbone)
    first = ContentLoss()
    insert_after(stages, "2", first)
    assert stages[locate(stages, "3")].module is first
    second = ContentLoss()
    insert_after(stages, "3", second)
    assert [s.module for s in stages[2:4]] == [first, second]


def test_trim_drops_trailing_layers_and_is_idempotent(backbone):
    stages = _stages(backbone)
    insert_after(stages, "relu1_2", ContentLoss())
    removed = trim(stages)
    assert removed == 8
    assert [s.name for s in stages][-2:] == ["relu1_2", "relu1_2/ContentLoss"]
    snapshot = [s.module for s in stages]
    assert trim(stages) == 0
    assert [s.module for s in stages] == snapshot


def test_trim_without_loss_stages_empties_pipeline(backbone):
    stages = _stages(backbone)
    trim(stages)
    assert stages == []


def test_from_sequential_disables_inplace():
    net = nn.Sequential(nn.Conv2d(3, 3, 1), nn.ReLU(inplace=True))
    builder = PipelineBuilder.from_sequential(net)
    assert builder.stages[1].module.inplace is False
    assert [s.name for s in builder.stages] == ["0", "1"]


def test_built_pipeline_matches_backbone(backbone, image_a):
    pipeline = as_builder(backbone).build()
    assert len(pipeline) == 12
    assert pipeline.names()[0] == "conv1_1"
    assert pipeline.loss_stages == ()
    with torch.no_grad():
        assert torch.equal(pipeline(image_a), backbone(image_a))


def test_builder_copies_stage_list(backbone):
    builder = as_builder(backbone)
    pipeline = builder.build()
    builder.insert_after("conv1_1", ContentLoss())
    assert len(builder) == 13
    assert len(pipeline) == 12
    assert len(as_builder(pipeline)) == 12
