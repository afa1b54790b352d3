import weakref
from enum import Enum
from typing import NamedTuple, Optional

import torch
from loguru import logger
from torch import nn

from heatmap_loss.configs.loss_config import HeatmapLossConfig
from heatmap_loss.errors import (
    ConfigurationError,
    EmptyInputError,
    InvalidChannelCountError,
    ShapeMismatchError,
)
from heatmap_loss.tensor4d import Shape4D, Tensor4D
from heatmap_loss.utils.display import DisplaySink, build_display_sink
from heatmap_loss.utils.logging_utils import timed
from heatmap_loss.utils.visualization import VisualizationFrame, Visualizer


class _DiffSource(NamedTuple):
    """The tensors (and their in-place versions) the difference buffer was computed from"""
    prediction: weakref.ref
    prediction_version: int
    target: weakref.ref
    target_version: int

    @classmethod
    def of(cls, prediction: torch.Tensor, target: torch.Tensor) -> "_DiffSource":
        return cls(
            prediction=weakref.ref(prediction),
            prediction_version=prediction._version,
            target=weakref.ref(target),
            target_version=target._version,
        )

    def matches(self, prediction: torch.Tensor, target: torch.Tensor) -> bool:
        return (
            self.prediction() is prediction
            and self.target() is target
            and self.prediction_version == prediction._version
            and self.target_version == target._version
        )


class EngineState(Enum):
    UNCONFIGURED = 'unconfigured'
    READY = 'ready'


class HeatmapLossEngine:
    """
    Euclidean loss over a batch of (C, H, W) heatmap stacks.

    forward returns sum((prediction - target) ** 2) / (N * C * H * W).

    backward writes prediction - target into *both* gradients, without dividing by
    N * C * H * W or by 2, and without negating the target gradient. The gradient scale
    does not match the normalized forward value; learning rates must account for it.

    Must be configured with the input shapes before use and reconfigured whenever they
    change. Not thread safe: the difference buffer is shared between calls.
    """

    def __init__(
            self,
            config: Optional[HeatmapLossConfig] = None,
            sink: Optional[DisplaySink] = None,
    ):
        """
        :param config: loss config. Defaults to no visualisation
        :param sink: where visualisations are shown. Only used if `config.visualize`.
            Defaults to the sink named by `config.display_backend`
        """
        self._config = config if config is not None else HeatmapLossConfig()
        self._state = EngineState.UNCONFIGURED
        self._shape: Optional[Shape4D] = None
        self._diff: Optional[torch.Tensor] = None
        self._diff_source: Optional[_DiffSource] = None

        if self._config.visualize:
            logger.warning(
                'Heatmap loss visualisation enabled. '
                f'The forward pass will {"block on a key press" if self._config.wait_for_key else "render"} '
                'for every image; do not enable this for real training runs')
            size = self._config.visualisation_size
            self._visualizer = Visualizer(
                sink=sink if sink is not None else build_display_sink(self._config.display_backend),
                target_size=(size, size),
                wait_for_key=self._config.wait_for_key,
            )
        else:
            self._visualizer = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def configured_shape(self) -> Optional[Shape4D]:
        return self._shape

    @property
    def visualizer(self) -> Optional[Visualizer]:
        return self._visualizer

    def configure(
            self,
            prediction_shape: Shape4D | torch.Size | tuple[int, ...],
            target_shape: Shape4D | torch.Size | tuple[int, ...],
            dtype: torch.dtype = torch.float32,
            device: torch.device | str = 'cpu',
    ):
        """
        Validate the input shapes and (re)allocate the difference buffer

        :param prediction_shape: (N, C, H, W) of the prediction
        :param target_shape: (N, C, H, W) of the target
        :param dtype: dtype of the difference buffer
        :param device: device of the difference buffer
        :raises ShapeMismatchError: if the shapes disagree
        :raises EmptyInputError: if any dimension is 0
        :raises ConfigurationError: if the visualize channel does not exist
        """
        pred_shape = Shape4D.from_size(prediction_shape)
        target_shape = Shape4D.from_size(target_shape)

        for dim in ('channels', 'height', 'width', 'num'):
            if getattr(pred_shape, dim) != getattr(target_shape, dim):
                raise ShapeMismatchError(
                    f'prediction and target {dim} differ: '
                    f'{tuple(pred_shape)} vs {tuple(target_shape)}')

        if 0 in pred_shape:
            raise EmptyInputError(f'cannot compute a normalized loss for shape {tuple(pred_shape)}')

        if self._config.visualize and self._config.visualize_channel >= pred_shape.channels:
            raise ConfigurationError(
                f'visualize_channel {self._config.visualize_channel} out of range for '
                f'{pred_shape.channels} channels')

        self._diff = torch.empty(pred_shape, dtype=dtype, device=device)
        self._diff_source = None
        self._shape = pred_shape
        self._state = EngineState.READY
        logger.debug(f'configured heatmap loss for shape {tuple(pred_shape)}')

    def needs_configure(
            self,
            prediction_shape: torch.Size | tuple[int, ...],
            target_shape: torch.Size | tuple[int, ...],
    ) -> bool:
        return (
            self._state != EngineState.READY
            or tuple(prediction_shape) != self._shape
            or tuple(target_shape) != self._shape
        )

    def forward(
            self,
            prediction: torch.Tensor,
            target: torch.Tensor,
            context: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Compute the normalized loss

        :param prediction: predicted heatmaps (N, C, H, W)
        :param target: ground truth heatmaps (N, C, H, W)
        :param context: optional (N, 1 or 3, H', W') tensor the peaks are also drawn on
            when visualising, e.g. the input image
        :return: 0-dim tensor with the prediction's dtype and device
        """
        pred, gt = self._validate_inputs(prediction=prediction, target=target)
        visualizer = self._visualizer if self._visualizer is not None and self._visualizer.enabled else None
        context4d = None
        if visualizer is not None and context is not None:
            context4d = Tensor4D(context, name='context')
            if context4d.channels not in (1, 3):
                raise InvalidChannelCountError(
                    f'visualisation context must have 1 or 3 channels, got {context4d.channels}')

        with torch.no_grad():
            if self._config.reuse_forward_diff:
                self._ensure_diff_like(prediction)
                self._diff.copy_(prediction - target)
                self._diff_source = _DiffSource.of(prediction=prediction, target=target)

            loss = 0.0
            # batch size is taken from the target
            for idx_img in range(gt.num):
                diff = pred.image(idx_img).to(torch.float64) - gt.image(idx_img).to(torch.float64)
                loss += torch.sum(diff * diff).item()

                if visualizer is not None:
                    frame = VisualizationFrame.capture(
                        prediction=pred,
                        target=gt,
                        image_index=idx_img,
                        channel=self._config.visualize_channel,
                    )
                    with timed(label=f'visualize image {idx_img}'):
                        visualizer.visualize(loss=loss, frame=frame, context=context4d)

        logger.debug(f'total loss: {loss}')
        loss /= gt.count
        logger.debug(f'total normalized loss: {loss}')

        return torch.tensor(loss, dtype=prediction.dtype, device=prediction.device)

    def backward(
            self,
            prediction: torch.Tensor,
            target: torch.Tensor,
            grad_prediction: Optional[torch.Tensor] = None,
            grad_target: Optional[torch.Tensor] = None,
            diff: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Write prediction - target into both gradient buffers

        :param prediction: predicted heatmaps (N, C, H, W)
        :param target: ground truth heatmaps (N, C, H, W)
        :param grad_prediction: buffer to write the prediction gradient into. Allocated if None
        :param grad_target: buffer to write the target gradient into. Allocated if None
        :param diff: prediction - target computed earlier for exactly these tensors, e.g.
            by `forward_diff`. If None, the difference is recomputed unless
            `reuse_forward_diff` is set and the last forward saw the same, unmodified tensors
        :return: (grad_prediction, grad_target), identical values
        """
        self._validate_inputs(prediction=prediction, target=target)
        if diff is not None and diff.shape != prediction.shape:
            raise ShapeMismatchError(
                f'diff has shape {tuple(diff.shape)}, expected {tuple(prediction.shape)}')

        with torch.no_grad():
            self._ensure_diff_like(prediction)
            if diff is not None:
                self._diff.copy_(diff)
                self._diff_source = None
            elif not self._can_reuse_diff(prediction=prediction, target=target):
                self._diff.copy_(prediction - target)
                self._diff_source = None

            grads = []
            for name, buf in (('grad_prediction', grad_prediction), ('grad_target', grad_target)):
                if buf is None:
                    buf = torch.empty_like(prediction)
                elif buf.shape != prediction.shape:
                    raise ShapeMismatchError(
                        f'{name} has shape {tuple(buf.shape)}, expected {tuple(prediction.shape)}')
                buf.copy_(self._diff)
                grads.append(buf)

        return grads[0], grads[1]

    def forward_diff(self, prediction: torch.Tensor, target: torch.Tensor) -> Optional[torch.Tensor]:
        """
        Copy of the difference the last forward computed for `prediction` and `target`.

        None unless `reuse_forward_diff` is set and the buffer still holds the difference
        of exactly these, unmodified, tensors
        """
        if not self._can_reuse_diff(prediction=prediction, target=target):
            return None
        return self._diff.clone()

    def close(self):
        if self._visualizer is not None:
            self._visualizer.close()

    def _validate_inputs(self, prediction: torch.Tensor, target: torch.Tensor) -> tuple[Tensor4D, Tensor4D]:
        if self._state != EngineState.READY:
            raise ConfigurationError('heatmap loss used before configure')
        pred = Tensor4D(prediction, name='prediction')
        gt = Tensor4D(target, name='target')
        if pred.shape != self._shape or gt.shape != self._shape:
            raise ShapeMismatchError(
                f'configured for shape {tuple(self._shape)} but got prediction {tuple(pred.shape)} '
                f'and target {tuple(gt.shape)}; reconfigure first')
        return pred, gt

    def _ensure_diff_like(self, prediction: torch.Tensor):
        if self._diff.dtype != prediction.dtype or self._diff.device != prediction.device:
            self._diff = torch.empty_like(prediction)
            self._diff_source = None

    def _can_reuse_diff(self, prediction: torch.Tensor, target: torch.Tensor) -> bool:
        return (
            self._config.reuse_forward_diff
            and self._diff_source is not None
            and self._diff_source.matches(prediction=prediction, target=target)
        )


class HeatmapEuclideanLossFunction(torch.autograd.Function):
    """
    Routes autograd through a `HeatmapLossEngine`.

    The incoming gradient is ignored: the gradients are always prediction - target,
    so scaling the loss after this function does not scale them.
    """

    @staticmethod
    def forward(ctx, prediction, target, engine: HeatmapLossEngine, context=None):
        ctx.engine = engine
        ctx.save_for_backward(prediction, target)
        loss = engine.forward(prediction=prediction, target=target, context=context)
        # kept per call: the engine buffer is overwritten by the next forward
        ctx.diff = engine.forward_diff(prediction=prediction, target=target)
        return loss

    @staticmethod
    def backward(ctx, grad_output):
        prediction, target = ctx.saved_tensors
        grad_prediction, grad_target = ctx.engine.backward(
            prediction=prediction, target=target, diff=ctx.diff)
        return (
            grad_prediction if ctx.needs_input_grad[0] else None,
            grad_target if ctx.needs_input_grad[1] else None,
            None,
            None,
        )


class HeatmapLoss(nn.Module):
    """
    Euclidean heatmap loss as a module. See `HeatmapLossEngine` for the exact forward
    and gradient semantics.

    The engine is reconfigured whenever the input shapes change.
    """

    def __init__(self, config: Optional[HeatmapLossConfig] = None, sink: Optional[DisplaySink] = None):
        super().__init__()
        self._engine = HeatmapLossEngine(config=config, sink=sink)

    @property
    def engine(self) -> HeatmapLossEngine:
        return self._engine

    def forward(
            self,
            prediction: torch.Tensor,
            target: torch.Tensor,
            context: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        :param prediction: predicted heatmaps (N, C, H, W)
        :param target: ground truth heatmaps (N, C, H, W)
        :param context: optional tensor to draw the peaks on when visualising
        :return: scalar loss
        """
        if self._engine.needs_configure(prediction.shape, target.shape):
            self._engine.configure(
                prediction_shape=prediction.shape,
                target_shape=target.shape,
                dtype=prediction.dtype,
                device=prediction.device,
            )
        return HeatmapEuclideanLossFunction.apply(prediction, target, self._engine, context)

    def close(self):
        """Close any windows the visualisation opened"""
        self._engine.close()
