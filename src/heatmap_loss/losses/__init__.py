from heatmap_loss.losses.heatmap_loss import (
    EngineState,
    HeatmapEuclideanLossFunction,
    HeatmapLoss,
    HeatmapLossEngine,
)
