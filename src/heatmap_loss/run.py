import json
import random
from pathlib import Path
from typing import Optional

import click
import numpy as np
import torch
from loguru import logger

from heatmap_loss.configs.loss_config import HeatmapLossConfig
from heatmap_loss.losses import HeatmapLoss
from heatmap_loss.utils.display import DisplaySink
from heatmap_loss.utils.heatmaps import gaussian_heatmaps, random_keypoints
from heatmap_loss.utils.logging_utils import ProgressLogger, configure_logging, timed_func


@timed_func
def fit(
        target: torch.Tensor,
        config: HeatmapLossConfig,
        iterations: int,
        learning_rate: float,
        sink: Optional[DisplaySink] = None,
        generator: Optional[torch.Generator] = None,
) -> tuple[torch.Tensor, list[float]]:
    """
    Fit a randomly initialised prediction to `target` by gradient descent on the heatmap loss.

    :param target: ground truth heatmaps (N, C, H, W)
    :param config: loss config
    :param iterations: number of optimizer steps
    :param learning_rate: SGD learning rate. Gradients are not normalized by the number of
        elements, so values well below 1 are needed for convergence
    :param sink: display sink used when visualising
    :return: fitted prediction and the loss of every iteration
    """
    prediction = torch.rand(target.shape, generator=generator, dtype=target.dtype).requires_grad_(True)
    loss_fn = HeatmapLoss(config=config, sink=sink)
    optimizer = torch.optim.SGD(params=[prediction], lr=learning_rate)

    # peaks are also drawn on the max projection of the targets
    context = target.amax(dim=1, keepdim=True) if config.visualize else None

    progress = ProgressLogger(desc='fit', total=iterations)
    losses = []
    try:
        for _ in range(iterations):
            optimizer.zero_grad()
            loss = loss_fn(prediction, target, context)
            loss.backward()
            optimizer.step()
            losses.append(loss.item())
            progress.log_progress(other=f'loss {losses[-1]:.6f}')
    finally:
        loss_fn.close()

    return prediction.detach(), losses


@click.command()
@click.option(
    "--config-path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to heatmap loss configuration JSON file",
)
@click.option("--batch-size", type=click.IntRange(min=1), default=4, show_default=True)
@click.option("--channels", type=click.IntRange(min=1), default=3, show_default=True)
@click.option("--height", type=click.IntRange(min=1), default=32, show_default=True)
@click.option("--width", type=click.IntRange(min=1), default=32, show_default=True)
@click.option("--sigma", type=float, default=1.5, show_default=True)
@click.option("--iterations", type=click.IntRange(min=1), default=100, show_default=True)
@click.option("--learning-rate", type=float, default=0.1, show_default=True)
@click.option("--seed", type=int, default=1234, show_default=True)
@click.option("--log-file", type=click.Path(path_type=Path), default=None)
def main(
        config_path: Optional[Path],
        batch_size: int,
        channels: int,
        height: int,
        width: int,
        sigma: float,
        iterations: int,
        learning_rate: float,
        seed: int,
        log_file: Optional[Path],
):
    """Fit random heatmaps to synthetic gaussian targets using the heatmap loss."""
    configure_logging(log_file=str(log_file) if log_file else None)

    if config_path is not None:
        with open(config_path) as f:
            config = json.load(f)
        config = HeatmapLossConfig.model_validate(config)
    else:
        config = HeatmapLossConfig()
    logger.info(config)

    torch.manual_seed(seed=seed)
    random.seed(seed)
    np.random.seed(seed)
    generator = torch.Generator().manual_seed(seed)
    logger.info(f"Random seed set to: {seed}")

    keypoints = random_keypoints(num=batch_size, channels=channels, height=height, width=width,
                                 generator=generator)
    target = gaussian_heatmaps(keypoints=keypoints, height=height, width=width, sigma=sigma)
    logger.info(f"Target heatmaps shape: {tuple(target.shape)}")

    _, losses = fit(
        target=target,
        config=config,
        iterations=iterations,
        learning_rate=learning_rate,
        generator=generator,
    )

    logger.info("=" * 60)
    logger.info(f"Fit completed! Initial loss: {losses[0]:.6f} final loss: {losses[-1]:.6f}")
    logger.info("=" * 60)


if __name__ == "__main__":
    main()
