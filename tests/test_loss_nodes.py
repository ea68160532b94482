import pytest
import torch

from perceptual_criterion.errors import CaptureMissingError, GuideMismatchError
from perceptual_criterion.loss_nodes import (
    ContentLoss,
    DeepDreamLoss,
    HistLoss,
    LossMode,
    LossType,
    StyleLoss,
    StyleLossGuided,
    gram_matrix,
    histogram_match,
    rank_histogram,
)


def _feat(seed, shape=(1, 4, 6, 6)):
    g = torch.Generator().manual_seed(seed)
    return torch.randn(*shape, generator=g)


def _captured(node, target):
    node.set_mode(LossMode.CAPTURE)
    node(target)
    node.set_mode(LossMode.LOSS)
    return node


def test_forward_is_pass_through():
    x = _feat(0)
    node = ContentLoss()
    for mode in LossMode:
        node.set_mode(mode)
        if mode is LossMode.LOSS:
            node.target = x.clone()
        assert node(x) is x


def test_set_mode_accepts_strings():
    node = ContentLoss()
    node.set_mode("capture")
    assert node.mode is LossMode.CAPTURE
    with pytest.raises(ValueError):
        node.set_mode("train")


def test_content_loss_zero_on_reference():
    x = _feat(0)
    node = _captured(ContentLoss(strength=3.0), x)
    node(x)
    assert float(node.loss) == 0.0


def test_content_loss_l2_value():
    t = torch.zeros(1, 2, 2, 2)
    x = torch.full((1, 2, 2, 2), 2.0)
    node = _captured(ContentLoss(strength=0.5), t)
    node(x)
    assert float(node.loss) == pytest.approx(0.5 * 4.0)


def test_content_loss_smooth_l1_value():
    t = torch.zeros(1, 1, 1, 2)
    x = torch.tensor([[[[0.5, 3.0]]]])
    node = _captured(ContentLoss(loss_type="SmoothL1"), t)
    node(x)
    assert float(node.loss) == pytest.approx((0.125 + 2.5) / 2)


def test_loss_is_stale_outside_loss_mode():
    node = _captured(ContentLoss(), _feat(0))
    node(_feat(1))
    before = float(node.loss)
    node.set_mode(LossMode.NONE)
    node(_feat(2))
    assert float(node.loss) == before


def test_capture_is_overwritten():
    a, b = _feat(0), _feat(1)
    node = _captured(ContentLoss(), a)
    node.set_mode(LossMode.CAPTURE)
    node(b)
    assert torch.equal(node.target, b)


def test_loss_before_capture():
    node = ContentLoss()
    node.set_mode(LossMode.LOSS)
    with pytest.raises(CaptureMissingError):
        node(_feat(0))

    lenient = ContentLoss(strict=False)
    lenient.set_mode(LossMode.LOSS)
    lenient(_feat(0))
    assert float(lenient.loss) == 0.0


def test_shape_mismatch_raises():
    node = _captured(ContentLoss(), _feat(0, (1, 4, 6, 6)))
    with pytest.raises(ValueError):
        node(_feat(1, (1, 4, 5, 5)))


def test_loss_type_parse():
    assert LossType.parse("smoothl1") is LossType.SMOOTH_L1
    assert LossType.parse(LossType.L2) is LossType.L2
    with pytest.raises(ValueError):
        LossType.parse("L3")


def test_gram_matrix_symmetric_and_normalized():
    x = _feat(3, (2, 5, 4, 3))
    g = gram_matrix(x)
    assert g.shape == (2, 5, 5)
    assert torch.allclose(g, g.transpose(1, 2))
    ones = torch.ones(1, 2, 3, 3)
    assert torch.allclose(gram_matrix(ones), torch.full((1, 2, 2), 0.5))


def test_style_loss_uses_first_target_image():
    a, b = _feat(0), _feat(1)
    node = _captured(StyleLoss(), torch.cat([a, b]))
    node(torch.cat([a, a]))
    assert float(node.loss) == 0.0
    node(b)
    assert float(node.loss) > 0.0


def test_style_mean_and_gram_differ():
    a, b = _feat(0), _feat(1)
    gram = _captured(StyleLoss(agg_type="gram"), b)
    mean = _captured(StyleLoss(agg_type="mean"), b)
    gram(a)
    mean(a)
    assert float(gram.loss) > 0.0
    assert float(mean.loss) > 0.0
    assert float(gram.loss) != pytest.approx(float(mean.loss))


def test_style_loss_rejects_unknown_aggregation():
    with pytest.raises(ValueError):
        StyleLoss(agg_type="max")


def test_rank_histogram_shape_and_order():
    h = rank_histogram(_feat(0, (2, 3, 5, 5)), bins=8)
    assert h.shape == (2, 3, 8)
    assert torch.all(h[..., 1:] >= h[..., :-1])


def test_hist_loss_self_match_is_zero():
    a, b = _feat(0), _feat(1)
    node = _captured(HistLoss(bins=16), a)
    node(a)
    assert float(node.loss) == 0.0
    node(b)
    assert float(node.loss) > 0.0


def test_hist_loss_ignores_spatial_layout():
    a = _feat(0)
    shuffled = a.flatten(2)[..., torch.randperm(36)].reshape(a.shape)
    node = _captured(HistLoss(bins=36), a)
    node(shuffled)
    assert float(node.loss) == pytest.approx(0.0)


def test_hist_loss_gradient_reaches_every_activation():
    g = torch.Generator().manual_seed(5)
    node = _captured(HistLoss(bins=16), torch.rand(1, 2, 32, 32, generator=g))
    x = torch.rand(1, 2, 32, 32, generator=g)
    grad = node.backward(x, torch.zeros_like(x))
    assert (grad != 0).sum() > 0.95 * x.numel()


def test_histogram_match_moves_towards_reference():
    x = _feat(0, (2, 3, 8, 8))
    reference = rank_histogram(x[:1] + 1.0, bins=64)
    matched = histogram_match(x[:1], reference, bins=64)
    assert matched.shape == (1, 3, 8, 8)
    assert torch.allclose(matched, x[:1] + 1.0, atol=1e-5)
    assert torch.equal(histogram_match(x, rank_histogram(x, 64), 64), x)


def test_deepdream_loss_and_gradient():
    x = _feat(0)
    node = DeepDreamLoss(strength=2.0)
    node.set_mode(LossMode.CAPTURE)
    node(x)
    assert node.target is None
    node.set_mode(LossMode.LOSS)
    node(x)
    assert float(node.loss) == pytest.approx(float(-2.0 * x.pow(2).mean()))
    grad = node.backward(x, torch.zeros_like(x))
    assert torch.allclose(grad, -2.0 * 2 * x / x.numel())


def test_content_backward_adds_own_gradient():
    t, x = _feat(0), _feat(1)
    upstream = _feat(2)
    node = _captured(ContentLoss(strength=1.5), t)
    grad = node.backward(x, upstream)
    expected = upstream + 1.5 * 2 * (x - t) / x.numel()
    assert torch.allclose(grad, expected, atol=1e-6)


def test_backward_outside_loss_mode_passes_gradient_through():
    node = _captured(ContentLoss(), _feat(0))
    upstream = _feat(2)
    for mode in (LossMode.NONE, LossMode.CAPTURE):
        node.set_mode(mode)
        assert node.backward(_feat(1), upstream) is upstream


def test_zero_strength_gives_zero_loss_and_gradient():
    node = _captured(StyleLoss(strength=0.0), _feat(0))
    x = _feat(1)
    node(x)
    assert float(node.loss) == 0.0
    upstream = torch.zeros_like(x)
    assert torch.equal(node.backward(x, upstream), upstream)


def test_guided_all_ones_matches_unguided():
    a, b = _feat(0), _feat(1)
    ones = torch.ones(1, 1, 6, 6)
    plain = _captured(StyleLoss(), b)
    guided = _captured(StyleLossGuided(num_guides=1), (b, ones))
    plain(a)
    out = guided((a, ones))
    assert out[0] is a
    assert float(guided.loss) == pytest.approx(float(plain.loss), rel=1e-5)


def test_guided_several_ones_channels_match_unguided():
    a, b = _feat(0), _feat(1)
    ones = torch.ones(1, 3, 6, 6)
    plain = _captured(StyleLoss(), b)
    guided = _captured(StyleLossGuided(), (b, ones))
    plain(a)
    guided((a, ones))
    assert float(guided.loss) == pytest.approx(float(plain.loss), rel=1e-5)


def test_guided_mask_restricts_region():
    a, b = _feat(0), _feat(1)
    top = torch.zeros(1, 1, 6, 6)
    top[..., :3, :] = 1.0
    mixed = b.clone()
    mixed[..., :3, :] = a[..., :3, :]
    node = _captured(StyleLossGuided(), (a, top))
    node((mixed, top))
    assert float(node.loss) == pytest.approx(0.0, abs=1e-7)


def test_guided_backward_is_for_features():
    a, b = _feat(0), _feat(1)
    ones = torch.ones(1, 1, 6, 6)
    node = _captured(StyleLossGuided(), (b, ones))
    grad = node.backward((a, ones), torch.zeros_like(a))
    assert grad.shape == a.shape
    assert grad.abs().sum() > 0


def test_guided_mismatches():
    b = _feat(1)
    node = StyleLossGuided(num_guides=2)
    node.set_mode(LossMode.CAPTURE)
    with pytest.raises(GuideMismatchError):
        node((b, torch.ones(1, 1, 6, 6)))
    with pytest.raises(GuideMismatchError):
        node((b, torch.ones(1, 2, 3, 3)))

    node = _captured(StyleLossGuided(), (b, torch.ones(1, 2, 6, 6)))
    with pytest.raises(GuideMismatchError):
        node((b, torch.ones(1, 3, 6, 6)))
