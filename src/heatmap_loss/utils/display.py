import re
from abc import ABC, abstractmethod

import cv2
import numpy as np
from loguru import logger
from matplotlib import pyplot as plt

from heatmap_loss.errors import DisplayUnavailableError


class DisplaySink(ABC):
    """Somewhere to show diagnostic images, optionally blocking until the user acknowledges them"""

    @abstractmethod
    def show(self, name: str, image: np.ndarray):
        pass

    @abstractmethod
    def wait_for_acknowledgement(self):
        pass

    def close(self):
        """Release any windows opened by `show`"""
        pass


_NON_INTERACTIVE_BACKENDS = ('agg', 'cairo', 'pdf', 'pgf', 'ps', 'svg', 'template')


def _is_interactive_backend() -> bool:
    return plt.get_backend().lower() not in _NON_INTERACTIVE_BACKENDS


def opencv_has_gui() -> bool:
    """Whether this OpenCV build can open highgui windows"""
    match = re.search(r'^\s*GUI:\s*(\S+)', cv2.getBuildInformation(), flags=re.MULTILINE)
    return match is None or match.group(1).upper() != 'NONE'


class NullDisplaySink(DisplaySink):
    """Discards everything. Used for headless runs"""

    def show(self, name: str, image: np.ndarray):
        pass

    def wait_for_acknowledgement(self):
        pass


class OpenCVDisplaySink(DisplaySink):
    """
    Shows images in named highgui windows. `wait_for_acknowledgement` blocks until a key
    is pressed in one of the windows; there is no timeout.

    Needs an OpenCV build with GUI support. opencv-python-headless has none, in which case
    the first `show` raises `DisplayUnavailableError`.
    """

    def __init__(self):
        self._windows: set[str] = set()
        if not opencv_has_gui():
            logger.warning(
                'OpenCV was built without GUI support, windows cannot be shown. '
                'Install opencv-python or use the matplotlib display backend')

    def show(self, name: str, image: np.ndarray):
        try:
            if name not in self._windows:
                cv2.namedWindow(name, cv2.WINDOW_AUTOSIZE)
                self._windows.add(name)
            cv2.imshow(name, image)
        except cv2.error as e:
            raise DisplayUnavailableError(f'could not show window {name!r}: {e}') from e

    def wait_for_acknowledgement(self):
        try:
            key = cv2.waitKey(0)
        except cv2.error as e:
            raise DisplayUnavailableError(f'could not wait for key press: {e}') from e
        logger.debug(f'key pressed: {key}')

    def close(self):
        for name in self._windows:
            cv2.destroyWindow(name)
        self._windows.clear()


class MatplotlibDisplaySink(DisplaySink):
    """
    Shows each named image in its own matplotlib figure.

    With a non-interactive backend (e.g. Agg) figures are only drawn, and
    `wait_for_acknowledgement` raises `DisplayUnavailableError` instead of blocking forever
    """

    def __init__(self):
        self._figures: dict[str, plt.Figure] = {}

    def show(self, name: str, image: np.ndarray):
        if name not in self._figures:
            fig = plt.figure(num=name)
            self._figures[name] = fig
        fig = self._figures[name]
        fig.clf()
        ax = fig.add_subplot(1, 1, 1)
        ax.set_title(name)
        ax.axis('off')
        if image.ndim == 3:
            # images are BGR like opencv expects; matplotlib wants RGB in [0, 1]
            ax.imshow(np.clip(image[..., ::-1], 0.0, 1.0))
        else:
            ax.imshow(image, cmap='gray')
        if _is_interactive_backend():
            plt.show(block=False)
            plt.pause(0.001)

    def wait_for_acknowledgement(self):
        if not self._figures:
            return
        if not _is_interactive_backend():
            raise DisplayUnavailableError(
                f'matplotlib backend {plt.get_backend()} is non-interactive, cannot wait for a button press')
        try:
            plt.waitforbuttonpress(timeout=-1)
        except RuntimeError as e:
            raise DisplayUnavailableError(f'could not wait for button press: {e}') from e

    def close(self):
        for fig in self._figures.values():
            plt.close(fig)
        self._figures.clear()


def build_display_sink(backend: str) -> DisplaySink:
    if backend == "opencv":
        return OpenCVDisplaySink()
    elif backend == "matplotlib":
        return MatplotlibDisplaySink()
    elif backend == "none":
        return NullDisplaySink()
    else:
        raise ValueError(f'unknown display backend {backend}')
