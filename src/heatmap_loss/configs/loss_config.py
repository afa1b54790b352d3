from typing import Literal

from pydantic import BaseModel, Field


class HeatmapLossConfig(BaseModel):
    # render prediction/ground truth peaks for every image. This blocks the forward pass
    # until a key is pressed, so only enable it when debugging
    visualize: bool = False
    visualize_channel: int = Field(0, ge=0)
    # side length of the square visualisation windows, in pixels
    visualisation_size: int = Field(256, gt=0)
    wait_for_key: bool = True
    # "opencv" needs an OpenCV build with GUI support; the headless wheel has none
    display_backend: Literal["opencv", "matplotlib", "none"] = "matplotlib"

    # reuse the difference computed in forward for backward instead of recomputing it.
    # Falls back to recomputing when backward sees other tensors, or tensors modified in place
    reuse_forward_diff: bool = False
