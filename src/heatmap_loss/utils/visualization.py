from dataclasses import dataclass
from typing import NamedTuple, Optional

import albumentations
import cv2
import numpy as np
import torch
from loguru import logger

from heatmap_loss.errors import ConfigurationError, DisplayUnavailableError, InvalidChannelCountError
from heatmap_loss.tensor4d import Tensor4D
from heatmap_loss.utils.display import DisplaySink, NullDisplaySink

# BGR
GT_MARKER_COLOR = (0, 255, 0)
PRED_MARKER_COLOR = (0, 0, 255)
GT_MARKER_RADIUS = 5
PRED_MARKER_RADIUS = 3

# 3 channel context images are 0-255 and usually dark, so they are brightened
CONTEXT_RGB_GAIN = 4.0

OVERLAY_WINDOW = 'overlay'
CONTEXT_WINDOW = 'visualisation_context'


class Peak(NamedTuple):
    """Location of an extremum in display coordinates. x is the column, y the row"""
    x: int
    y: int
    value: float

    @property
    def location(self) -> tuple[int, int]:
        return self.x, self.y


@dataclass
class VisualizationFrame:
    """
    Per pixel values of a single channel of a single image.

    Buffers are stored in storage orientation, shape (W, H): element [col, row] holds the
    value of pixel (row, col). `prepare_for_display` converts them to display orientation.
    """
    image_index: int
    channel: int
    predicted: np.ndarray
    ground_truth: np.ndarray
    diff: np.ndarray

    @classmethod
    def capture(cls, prediction: Tensor4D, target: Tensor4D, image_index: int, channel: int):
        pred = _to_storage_orientation(prediction.channel_slice(image_index, channel))
        gt = _to_storage_orientation(target.channel_slice(image_index, channel))
        return cls(
            image_index=image_index,
            channel=channel,
            predicted=pred,
            ground_truth=gt,
            diff=(pred - gt) ** 2,
        )


@dataclass
class ComposedOverlay:
    overlay: np.ndarray
    predicted: np.ndarray
    ground_truth: np.ndarray
    diff: np.ndarray
    gt_peak: Peak
    pred_peak: Peak


def _to_storage_orientation(x: torch.Tensor) -> np.ndarray:
    return np.ascontiguousarray(x.detach().cpu().to(torch.float32).numpy().T)


def _check_not_empty(img: np.ndarray, what: str):
    if img.ndim < 2 or img.shape[0] == 0 or img.shape[1] == 0:
        raise ConfigurationError(f'{what} has invalid shape {img.shape}')


def prepare_for_display(img: np.ndarray, target_size: tuple[int, int]) -> np.ndarray:
    """
    Convert a buffer from storage orientation to display orientation and resize it.

    The buffer is transposed, mirrored left to right and then bilinearly resized.
    Does not modify `img`.

    :param img: (W, H) or (W, H, 3) buffer
    :param target_size: (width, height) of the output
    :return: (height, width) or (height, width, 3) float32 buffer
    """
    _check_not_empty(img=img, what='display buffer')
    width, height = target_size
    if width <= 0 or height <= 0:
        raise ConfigurationError(f'invalid display size {target_size}')

    axes = (1, 0, 2) if img.ndim == 3 else (1, 0)
    out = np.flip(np.transpose(img, axes), axis=1)
    out = np.ascontiguousarray(out, dtype=np.float32)

    resize = albumentations.Resize(height=height, width=width)
    resized = resize(image=out)['image']
    if img.ndim == 2 and resized.ndim == 3:
        resized = resized[..., 0]
    return np.ascontiguousarray(resized)


def find_peak(img: np.ndarray) -> Peak:
    """
    Global maximum of a 2D buffer.

    Ties are broken by the first occurrence in row-major scan order (top row first,
    left to right).
    """
    _check_not_empty(img=img, what='peak search buffer')
    if img.ndim != 2:
        raise ConfigurationError(f'expected a 2D buffer, got shape {img.shape}')
    idx = int(np.argmax(img))
    row, col = divmod(idx, img.shape[1])
    return Peak(x=col, y=row, value=float(img[row, col]))


def find_extrema(img: np.ndarray) -> tuple[Peak, Peak]:
    """(minimum, maximum) of a 2D buffer, same tie breaking as `find_peak`"""
    _check_not_empty(img=img, what='extrema search buffer')
    if img.ndim != 2:
        raise ConfigurationError(f'expected a 2D buffer, got shape {img.shape}')
    idx = int(np.argmin(img))
    row, col = divmod(idx, img.shape[1])
    return Peak(x=col, y=row, value=float(img[row, col])), find_peak(img)


def draw_peaks(img: np.ndarray, gt_peak: Peak, pred_peak: Peak) -> np.ndarray:
    """Draws filled markers in place: larger green for ground truth, smaller red for prediction"""
    cv2.circle(img, gt_peak.location, GT_MARKER_RADIUS, GT_MARKER_COLOR, -1)
    cv2.circle(img, pred_peak.location, PRED_MARKER_RADIUS, PRED_MARKER_COLOR, -1)
    return img


def compose(
        predicted: np.ndarray,
        ground_truth: np.ndarray,
        diff: np.ndarray,
        target_size: tuple[int, int],
) -> ComposedOverlay:
    """
    Overlay ground truth and predicted peak locations on the predicted heatmap.

    :param predicted: predicted heatmap, storage orientation (W, H)
    :param ground_truth: ground truth heatmap, storage orientation (W, H)
    :param diff: per pixel squared error, storage orientation (W, H)
    :param target_size: (width, height) of the rendered images
    :return: the overlay, the resized buffers and the two peaks in display coordinates
    """
    for name, img in (('predicted', predicted), ('ground_truth', ground_truth), ('diff', diff)):
        _check_not_empty(img=img, what=name)

    overlay = np.stack([predicted] * 3, axis=-1)

    predicted = prepare_for_display(img=predicted, target_size=target_size)
    ground_truth = prepare_for_display(img=ground_truth, target_size=target_size)
    diff = prepare_for_display(img=diff, target_size=target_size)
    overlay = prepare_for_display(img=overlay, target_size=target_size)

    gt_min, gt_peak = find_extrema(ground_truth)
    logger.debug(f'gt min: {gt_min.value}  max: {gt_peak.value}')
    pred_min, pred_peak = find_extrema(predicted)
    logger.debug(f'prediction min: {pred_min.value}  max: {pred_peak.value}')

    draw_peaks(img=overlay, gt_peak=gt_peak, pred_peak=pred_peak)

    return ComposedOverlay(
        overlay=overlay,
        predicted=predicted,
        ground_truth=ground_truth,
        diff=diff,
        gt_peak=gt_peak,
        pred_peak=pred_peak,
    )


def compose_context(
        context: Tensor4D,
        image_index: int,
        gt_peak: Peak,
        pred_peak: Peak,
        target_size: tuple[int, int],
) -> np.ndarray:
    """
    Draw the peaks found by `compose` on another tensor, e.g. the network input image.

    3 channel (RGB, 0-255) contexts are scaled by 4/255 and converted to BGR.
    Single channel contexts are shown as-is.

    :param context: (N, 1 or 3, H, W) tensor
    :param image_index: which image of the batch to draw
    :return: (height, width) or (height, width, 3) float32 buffer
    """
    if context.channels not in (1, 3):
        raise InvalidChannelCountError(
            f'visualisation context must have 1 or 3 channels, got {context.channels}')
    is_rgb = context.channels == 3

    if is_rgb:
        img = context.image(image_index).detach().cpu().to(torch.float32).numpy()
        # (C, H, W) -> (W, H, C)
        img = np.ascontiguousarray(np.transpose(img, (2, 1, 0))) * CONTEXT_RGB_GAIN / 255
    else:
        img = _to_storage_orientation(context.channel_slice(image_index, 0))

    img = prepare_for_display(img=img, target_size=target_size)

    if is_rgb:
        img = cv2.cvtColor(img, cv2.COLOR_RGB2BGR)

    return draw_peaks(img=img, gt_peak=gt_peak, pred_peak=pred_peak)


class Visualizer:
    """
    Renders prediction vs ground truth diagnostics for each image during the forward pass.

    Never modifies the tensors it is given. If `wait_for_key` is set, every call to
    `visualize` blocks until the display sink is acknowledged (e.g. a key press), which
    stalls the training loop. If the sink reports that no display is available,
    visualisation is switched off for the rest of the run.
    """

    def __init__(
            self,
            sink: Optional[DisplaySink] = None,
            target_size: tuple[int, int] = (256, 256),
            wait_for_key: bool = True,
            display_offset: float = 1.0,
    ):
        """
        :param sink: where to show images. Defaults to discarding them
        :param target_size: (width, height) of rendered images
        :param wait_for_key: block after each image until the sink is acknowledged
        :param display_offset: subtracted from images before they are shown, so that
            heatmap intensities render dark and the markers stand out
        """
        self._sink = sink if sink is not None else NullDisplaySink()
        self._target_size = target_size
        self._wait_for_key = wait_for_key
        self._display_offset = display_offset
        self._enabled = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def target_size(self) -> tuple[int, int]:
        return self._target_size

    def visualize(
            self,
            loss: float,
            frame: VisualizationFrame,
            context: Optional[Tensor4D] = None,
    ) -> Optional[ComposedOverlay]:
        """
        :param loss: loss accumulated so far in this forward pass
        :param frame: captured heatmaps for one image
        :param context: optional extra tensor to draw the peaks on
        :return: the composed overlay, or None if visualisation has been disabled
        """
        if not self._enabled:
            return None

        logger.debug(f'image {frame.image_index} channel {frame.channel} loss so far: {loss}')

        composed = compose(
            predicted=frame.predicted,
            ground_truth=frame.ground_truth,
            diff=frame.diff,
            target_size=self._target_size,
        )
        context_img = None
        if context is not None:
            context_img = compose_context(
                context=context,
                image_index=frame.image_index,
                gt_peak=composed.gt_peak,
                pred_peak=composed.pred_peak,
                target_size=self._target_size,
            )

        try:
            self._sink.show(OVERLAY_WINDOW, composed.overlay - self._display_offset)
            if context_img is not None:
                self._sink.show(CONTEXT_WINDOW, context_img - self._display_offset)
            if self._wait_for_key:
                logger.info(f'waiting for acknowledgement of image {frame.image_index}')
                self._sink.wait_for_acknowledgement()
        except DisplayUnavailableError as e:
            logger.warning(f'{e}. Disabling visualisation')
            self._enabled = False
            self._sink.close()

        return composed

    def close(self):
        self._sink.close()
