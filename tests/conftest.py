import itertools

import gemmi
import numpy as np
import pytest

from indexer_cell import CrystalSystem, RecUnitCell
from indexer_peaks import PeakList


def lattice_d2(a, b, c, alpha, beta, gamma, n_lines, max_index=6):
    """The n_lines smallest distinct d*^2 of a direct cell, computed with gemmi."""
    uc = gemmi.UnitCell(a, b, c, alpha, beta, gamma)
    values = set()
    for hkl in itertools.product(range(-max_index, max_index + 1), repeat=3):
        if hkl == (0, 0, 0):
            continue
        d = uc.calculate_d(list(hkl))
        values.add(round(1.0 / (d * d), 12))
    return np.array(sorted(values)[:n_lines])


@pytest.fixture
def ortho_d2():
    return lattice_d2(7.0, 8.0, 9.0, 90, 90, 90, 15)


@pytest.fixture
def ortho_peaks(ortho_d2):
    return PeakList.from_d_spacing(1.0 / np.sqrt(ortho_d2))


@pytest.fixture
def ortho_cell():
    return RecUnitCell.from_direct_cell(7.0, 8.0, 9.0, 90, 90, 90, CrystalSystem.ORTHORHOMBIC)


@pytest.fixture
def ortho_peaks_with_spurious(ortho_d2):
    """Orthorhombic lines plus two peaks half way between consecutive lines."""
    extra = np.array([0.5 * (ortho_d2[3] + ortho_d2[4]), 0.5 * (ortho_d2[9] + ortho_d2[10])])
    d2 = np.concatenate([ortho_d2, extra])
    return PeakList.from_d_spacing(1.0 / np.sqrt(d2)), np.sqrt(extra)


@pytest.fixture
def cubic_peaks():
    return PeakList.from_d_spacing(1.0 / np.sqrt(lattice_d2(5.0, 5.0, 5.0, 90, 90, 90, 10)))
