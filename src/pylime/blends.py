"""Detection of blended line pairs within a species."""

from typing import NamedTuple

import numpy as np

from .constants import CLIGHT


class BlendSet(NamedTuple):
    """
    Ordered pairs of blended lines.

    Each entry ``k`` says that line ``partner[k]`` overlaps line ``line[k]``
    and that its profile, seen from ``line[k]``, is shifted by
    ``deltav[k]`` [m/s]. Every blended pair appears once in each order.
    """
    line: np.ndarray
    partner: np.ndarray
    deltav: np.ndarray

    @property
    def n_pairs(self) -> int:
        return len(self.line)

    @property
    def empty(self) -> bool:
        return len(self.line) == 0


def no_blends() -> BlendSet:
    return BlendSet(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0))


def find_blends(mol, threshold: float) -> BlendSet:
    """
    Find pairs of lines of ``mol`` closer than ``threshold`` in velocity.

    The velocity separation of partner j seen from line i is
    ``(nu_i - nu_j) / nu_i * c``.
    """
    freq = np.asarray(mol.freq, dtype=np.float64)
    dv = (freq[:, None] - freq[None, :]) / freq[:, None] * CLIGHT
    mask = np.abs(dv) < threshold
    np.fill_diagonal(mask, False)
    line, partner = np.nonzero(mask)
    return BlendSet(line.astype(np.int64), partner.astype(np.int64), dv[line, partner])
