import pytest
import torch

from heatmap_loss.utils.heatmaps import gaussian_heatmaps, random_keypoints


class TestGaussianHeatmaps:
    def test_peak_at_keypoint(self):
        keypoints = torch.tensor([[[3, 5], [0, 0]]])

        heatmaps = gaussian_heatmaps(keypoints=keypoints, height=8, width=10)

        assert heatmaps.shape == (1, 2, 8, 10)
        assert heatmaps[0, 0, 5, 3].item() == pytest.approx(1.0)
        assert heatmaps[0, 0].argmax().item() == 5 * 10 + 3
        assert heatmaps[0, 1, 0, 0].item() == pytest.approx(1.0)

    def test_invalid_sigma(self):
        with pytest.raises(ValueError):
            gaussian_heatmaps(keypoints=torch.zeros(1, 1, 2), height=4, width=4, sigma=0)

    def test_invalid_keypoints(self):
        with pytest.raises(ValueError):
            gaussian_heatmaps(keypoints=torch.zeros(1, 2), height=4, width=4)


class TestRandomKeypoints:
    def test_in_bounds(self):
        generator = torch.Generator().manual_seed(0)
        keypoints = random_keypoints(num=4, channels=3, height=5, width=7, generator=generator)
        assert keypoints.shape == (4, 3, 2)
        assert keypoints[..., 0].min() >= 0 and keypoints[..., 0].max() < 7
        assert keypoints[..., 1].min() >= 0 and keypoints[..., 1].max() < 5
