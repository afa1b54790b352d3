from typing import Optional

import torch


def gaussian_heatmaps(
        keypoints: torch.Tensor,
        height: int,
        width: int,
        sigma: float = 1.5,
        dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """
    Render one gaussian blob per keypoint

    keypoints: (N, C, 2) with (x, y) in heatmap pixel coordinates [0..W-1], [0..H-1]
    Returns: (N, C, H, W) heatmaps with peak value 1 at each keypoint
    """
    if sigma <= 0:
        raise ValueError("sigma must be > 0")
    if keypoints.ndim != 3 or keypoints.shape[-1] != 2:
        raise ValueError(f"Expected keypoints shape (N, C, 2), got {tuple(keypoints.shape)}")

    device = keypoints.device
    ys = torch.arange(height, device=device, dtype=dtype)
    xs = torch.arange(width, device=device, dtype=dtype)
    yy, xx = torch.meshgrid(ys, xs, indexing="ij")

    kx = keypoints[..., 0].to(dtype)[..., None, None]
    ky = keypoints[..., 1].to(dtype)[..., None, None]
    sq_dist = (xx - kx) ** 2 + (yy - ky) ** 2
    return torch.exp(-sq_dist / (2 * sigma ** 2))


def random_keypoints(
        num: int,
        channels: int,
        height: int,
        width: int,
        generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Integer keypoint locations uniformly sampled inside a (height, width) heatmap, shape (N, C, 2)"""
    x = torch.randint(0, width, (num, channels, 1), generator=generator)
    y = torch.randint(0, height, (num, channels, 1), generator=generator)
    return torch.cat([x, y], dim=-1)
