class HeatmapLossError(Exception):
    """Base class for errors raised by the heatmap loss"""


class ShapeMismatchError(HeatmapLossError, ValueError):
    """prediction/target extents disagree, or differ from the configured shape"""


class EmptyInputError(HeatmapLossError, ValueError):
    """A zero-sized dimension makes the loss normalization undefined"""


class InvalidChannelCountError(HeatmapLossError, ValueError):
    """Visualisation context tensor does not have 1 or 3 channels"""


class ConfigurationError(HeatmapLossError):
    """Invalid loss configuration, or the loss used before it is configured"""


class DisplayUnavailableError(HeatmapLossError):
    """Raised by a display sink when no display surface can be used"""
