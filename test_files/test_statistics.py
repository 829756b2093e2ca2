import numpy as np
import pytest

from surface_forces.config import ConfigurationError
from surface_forces.image import ImageVolume
from surface_forces.statistics import (
    TissueMoments,
    TissueStatistics,
    estimate_global,
    estimate_local,
    min_number_of_samples,
)


def _random_image(shape=(10, 12, 14), seed=0):
    rng = np.random.default_rng(seed)
    return ImageVolume(rng.normal(50.0, 10.0, size=shape), np.eye(4)), rng


def test_moments_merge():
    a = TissueMoments(2, 3.0, 5.0)
    b = TissueMoments(1, 3.0, 9.0)
    merged = a.merge(b)
    assert (merged.count, merged.sum, merged.sum2) == (3, 6.0, 14.0)
    assert merged.mean == pytest.approx(2.0)
    assert merged.variance == pytest.approx(14.0 / 3.0 - 4.0)
    assert TissueMoments().mean == 0.0
    assert TissueMoments().variance == 0.0


def test_global_matches_numpy():
    image, rng = _random_image()
    mask = rng.random(image.shape) > 0.5
    mean, var = estimate_global(image, mask)
    values = image.data[mask]
    assert mean == pytest.approx(values.mean(), rel=1e-9)
    assert var == pytest.approx(values.var(), rel=1e-6)


def test_global_partition_invariance():
    image, rng = _random_image(seed=1)
    mask = rng.random(image.shape) > 0.3
    reference = estimate_global(image, mask, partitions=1)
    for parts in (2, 7, 64):
        mean, var = estimate_global(image, mask, partitions=parts)
        assert mean == pytest.approx(reference[0], rel=1e-9)
        assert var == pytest.approx(reference[1], rel=1e-6)


def test_global_empty_mask():
    image, _ = _random_image()
    assert estimate_global(image, np.zeros(image.shape)) == (0.0, 0.0)


def test_mask_must_match_image():
    image, _ = _random_image()
    with pytest.raises(ConfigurationError):
        estimate_global(image, np.ones((3, 3, 3)))
    shifted = np.eye(4)
    shifted[0, 3] = 5.0
    mask = ImageVolume(np.ones(image.shape), shifted)
    with pytest.raises(ConfigurationError):
        estimate_global(image, mask)


def test_min_number_of_samples():
    assert min_number_of_samples((10, 10, 10), 5) == 6
    assert min_number_of_samples((10, 10, 1), 5) == 1
    assert min_number_of_samples((10, 10, 10), 1) == 0


def test_local_falls_back_to_global():
    image, _ = _random_image(shape=(10, 10, 10))
    mask = np.zeros(image.shape)
    mask[5, 5, 5] = 1
    mean, var = estimate_local(image, mask, 5, global_mean=3.0, global_variance=2.0)
    assert np.all(mean == 3.0)
    assert np.all(var == 2.0)


def test_local_window_statistics():
    image, _ = _random_image(shape=(10, 10, 10), seed=4)
    mask = np.ones(image.shape)
    mean, var = estimate_local(image, mask, 5)
    window = image.data[3:8, 3:8, 3:8]
    assert mean[5, 5, 5] == pytest.approx(window.mean(), rel=1e-9)
    assert var[5, 5, 5] == pytest.approx(window.var(), rel=1e-6)
    # Window clipped at the image corner
    corner = image.data[0:3, 0:3, 0:3]
    assert mean[0, 0, 0] == pytest.approx(corner.mean(), rel=1e-9)
    assert var[0, 0, 0] == pytest.approx(corner.var(), rel=1e-6)


def test_tissue_statistics_compute():
    image, rng = _random_image(shape=(8, 8, 8), seed=2)
    wm = rng.random(image.shape) > 0.5
    stats = TissueStatistics.compute(image, white_matter_mask=wm, white_matter_window_width=3)
    assert stats.has_wm and not stats.has_gm
    assert stats.wm_mean == pytest.approx(image.data[wm].mean(), rel=1e-9)
    assert stats.wm_sigma == pytest.approx(image.data[wm].std(), rel=1e-6)
    assert stats.wm_local_mean.shape == image.shape
    assert stats.gm_local_mean is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
