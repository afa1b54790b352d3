from typing import NamedTuple

import torch

from heatmap_loss.errors import ShapeMismatchError


class Shape4D(NamedTuple):
    num: int
    channels: int
    height: int
    width: int

    @property
    def count(self) -> int:
        return self.num * self.channels * self.height * self.width

    @classmethod
    def from_size(cls, size: torch.Size | tuple[int, ...]) -> "Shape4D":
        if len(size) != 4:
            raise ShapeMismatchError(f'expected a 4D (N, C, H, W) shape but got {tuple(size)}')
        return cls(*(int(x) for x in size))


class Tensor4D:
    """
    Read-only view over a dense (N, C, H, W) tensor with bounds-checked accessors.

    Batch is the outermost dimension and width the innermost, so the linear index of
    (n, c, row, col) is ((n * C + c) * H + row) * W + col.
    """

    def __init__(self, data: torch.Tensor, name: str = 'tensor'):
        """
        :param data: tensor of shape (N, C, H, W)
        :param name: used in error messages
        """
        if data.dim() != 4:
            raise ShapeMismatchError(f'{name} must be 4D (N, C, H, W), got shape {tuple(data.shape)}')
        self._data = data
        self._name = name
        self._shape = Shape4D.from_size(data.shape)

    @property
    def data(self) -> torch.Tensor:
        return self._data

    @property
    def name(self) -> str:
        return self._name

    @property
    def shape(self) -> Shape4D:
        return self._shape

    @property
    def num(self) -> int:
        return self._shape.num

    @property
    def channels(self) -> int:
        return self._shape.channels

    @property
    def height(self) -> int:
        return self._shape.height

    @property
    def width(self) -> int:
        return self._shape.width

    @property
    def count(self) -> int:
        return self._shape.count

    def offset(self, n: int, c: int, row: int, col: int) -> int:
        """Linear (flattened) index of an element"""
        self._check_index(n=n, c=c, row=row, col=col)
        return ((n * self.channels + c) * self.height + row) * self.width + col

    def at(self, n: int, c: int, row: int, col: int) -> float:
        self._check_index(n=n, c=c, row=row, col=col)
        return self._data[n, c, row, col].item()

    def image(self, n: int) -> torch.Tensor:
        """All channels of image `n`, shape (C, H, W)"""
        self._check_index(n=n)
        return self._data[n]

    def channel_slice(self, n: int, c: int) -> torch.Tensor:
        """Single channel of image `n`, shape (H, W)"""
        self._check_index(n=n, c=c)
        return self._data[n, c]

    def _check_index(self, n: int, c: int = 0, row: int = 0, col: int = 0):
        for axis, idx, size in (
                ('batch', n, self.num),
                ('channel', c, self.channels),
                ('row', row, self.height),
                ('col', col, self.width),
        ):
            if not 0 <= idx < size:
                raise ShapeMismatchError(
                    f'{self._name}: {axis} index {idx} out of range for shape {tuple(self._shape)}')

    def __repr__(self) -> str:
        return f'Tensor4D(name={self._name!r}, shape={tuple(self._shape)})'
