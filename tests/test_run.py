import json
from unittest.mock import MagicMock

import pytest
import torch
from click.testing import CliRunner
from pydantic import ValidationError

from heatmap_loss.configs.loss_config import HeatmapLossConfig
from heatmap_loss.run import fit, main
from heatmap_loss.utils.display import DisplaySink, NullDisplaySink
from heatmap_loss.utils.heatmaps import gaussian_heatmaps, random_keypoints


@pytest.fixture
def target():
    generator = torch.Generator().manual_seed(0)
    keypoints = random_keypoints(num=2, channels=2, height=8, width=8, generator=generator)
    return gaussian_heatmaps(keypoints=keypoints, height=8, width=8)


class TestFit:
    """Tests for fitting a prediction with the heatmap loss"""

    def test_loss_decreases_geometrically(self, target):
        """With unnormalized gradients, each SGD step scales the error by (1 - lr)"""
        _, losses = fit(target=target, config=HeatmapLossConfig(), iterations=5, learning_rate=0.1)

        assert len(losses) == 5
        for before, after in zip(losses, losses[1:]):
            assert after == pytest.approx(before * 0.81, rel=1e-4)

    def test_converges(self, target):
        prediction, losses = fit(target=target, config=HeatmapLossConfig(), iterations=100, learning_rate=0.5)
        assert losses[-1] < 1e-6
        assert torch.allclose(prediction, target, atol=1e-3)

    def test_with_visualization(self, target):
        config = HeatmapLossConfig(visualize=True, visualisation_size=32)
        _, losses = fit(target=target, config=config, iterations=2, learning_rate=0.1, sink=NullDisplaySink())
        assert losses[1] < losses[0]

    def test_closes_display(self, target):
        sink = MagicMock(spec=DisplaySink)
        config = HeatmapLossConfig(visualize=True, wait_for_key=False, visualisation_size=32)
        fit(target=target, config=config, iterations=2, learning_rate=0.1, sink=sink)
        sink.close.assert_called_once()


class TestMain:
    """Tests for the command line entry point"""

    def test_defaults(self):
        result = CliRunner().invoke(main, ['--iterations', '3', '--height', '8', '--width', '8'])
        assert result.exit_code == 0, result.output

    def test_with_config(self, tmp_path):
        config_path = tmp_path / 'config.json'
        config_path.write_text(json.dumps({
            'visualize': True,
            'visualize_channel': 1,
            'display_backend': 'none',
            'visualisation_size': 32,
        }))

        result = CliRunner().invoke(main, [
            '--config-path', str(config_path),
            '--batch-size', '2',
            '--channels', '2',
            '--height', '8',
            '--width', '8',
            '--iterations', '2',
        ])

        assert result.exit_code == 0, result.output

    def test_visualize_channel_out_of_range(self, tmp_path):
        config_path = tmp_path / 'config.json'
        config_path.write_text(json.dumps({'visualize': True, 'visualize_channel': 5, 'display_backend': 'none'}))

        result = CliRunner().invoke(main, ['--config-path', str(config_path), '--channels', '2', '--iterations', '1'])

        assert result.exit_code != 0


class TestHeatmapLossConfig:
    def test_defaults(self):
        config = HeatmapLossConfig()
        assert not config.visualize
        assert config.visualize_channel == 0
        assert config.visualisation_size == 256
        assert config.display_backend == 'matplotlib'
        assert not config.reuse_forward_diff

    def test_negative_channel(self):
        with pytest.raises(ValidationError):
            HeatmapLossConfig(visualize_channel=-1)

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            HeatmapLossConfig.model_validate({'display_backend': 'qt'})
