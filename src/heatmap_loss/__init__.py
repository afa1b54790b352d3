from heatmap_loss.configs.loss_config import HeatmapLossConfig
from heatmap_loss.errors import (
    ConfigurationError,
    DisplayUnavailableError,
    EmptyInputError,
    HeatmapLossError,
    InvalidChannelCountError,
    ShapeMismatchError,
)
from heatmap_loss.losses import HeatmapLoss, HeatmapLossEngine
from heatmap_loss.tensor4d import Shape4D, Tensor4D
