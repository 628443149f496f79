import itertools
import math

import gemmi
import numpy as np
import pytest

from indexer_cell import (
    CrystalSystem,
    RecUnitCell,
    UnsupportedDerivativeError,
    estimate_cell_volume,
    lattice_model,
)

DIRECT_CELLS = {
    CrystalSystem.TRICLINIC: (5.1, 6.2, 7.3, 80.0, 95.0, 105.0),
    CrystalSystem.MONOCLINIC: (5.1, 6.2, 7.3, 90.0, 105.0, 90.0),
    CrystalSystem.ORTHORHOMBIC: (5.1, 6.2, 7.3, 90.0, 90.0, 90.0),
    CrystalSystem.HEXAGONAL: (5.1, 5.1, 7.3, 90.0, 90.0, 120.0),
    CrystalSystem.RHOMBOHEDRAL: (5.1, 5.1, 5.1, 75.0, 75.0, 75.0),
    CrystalSystem.TETRAGONAL: (5.1, 5.1, 7.3, 90.0, 90.0, 90.0),
    CrystalSystem.CUBIC: (5.1, 5.1, 5.1, 90.0, 90.0, 90.0),
}

# Systems whose d*^2 is monotonic in every parameter over positive lengths
MONOTONIC_SYSTEMS = [
    CrystalSystem.ORTHORHOMBIC,
    CrystalSystem.HEXAGONAL,
    CrystalSystem.TETRAGONAL,
    CrystalSystem.CUBIC,
]

HKL = [hkl for hkl in itertools.product(range(-3, 4), repeat=3) if hkl != (0, 0, 0)]


def make_cell(system, zero=0.0):
    return RecUnitCell.from_direct_cell(*DIRECT_CELLS[system], system=system, zero=zero)


@pytest.mark.parametrize("system", list(CrystalSystem))
def test_hkl2d_matches_gemmi(system):
    cell = make_cell(system)
    uc = gemmi.UnitCell(*DIRECT_CELLS[system])
    for h, k, l in HKL:
        d = uc.calculate_d([h, k, l])
        assert cell.hkl2d(h, k, l) == pytest.approx(1.0 / (d * d), rel=1e-9)


def test_zero_shift_is_added():
    cell = make_cell(CrystalSystem.CUBIC)
    shifted = make_cell(CrystalSystem.CUBIC, zero=0.002)
    assert shifted.hkl2d(1, 2, 3) == pytest.approx(cell.hkl2d(1, 2, 3) + 0.002)


@pytest.mark.parametrize("system", list(CrystalSystem))
def test_direct_unit_cell_round_trip(system):
    a, b, c, alpha, beta, gamma = DIRECT_CELLS[system]
    out = make_cell(system).direct_unit_cell()
    assert out[:3] == pytest.approx([a, b, c], abs=1e-6)
    assert np.degrees(out[3:6]) == pytest.approx([alpha, beta, gamma], abs=1e-6)
    assert out[6] == pytest.approx(gemmi.UnitCell(a, b, c, alpha, beta, gamma).volume, rel=1e-9)


def test_direct_unit_cell_never_nan():
    # cos(alpha*) = -0.5 makes the rhombohedral metric singular
    cell = RecUnitCell([0.0, 0.2, -0.5], CrystalSystem.RHOMBOHEDRAL)
    assert np.all(np.isfinite(cell.direct_unit_cell()))
    cell = RecUnitCell([0.0, 0.2, 1.5], CrystalSystem.RHOMBOHEDRAL)
    assert np.all(np.isfinite(cell.direct_unit_cell()))


def test_to_gemmi():
    uc = make_cell(CrystalSystem.MONOCLINIC).to_gemmi()
    assert (uc.a, uc.b, uc.c) == pytest.approx((5.1, 6.2, 7.3), abs=1e-6)
    assert uc.beta == pytest.approx(105.0, abs=1e-6)


@pytest.mark.parametrize("system", list(CrystalSystem))
def test_parameter_derivatives_match_finite_differences(system):
    cell = make_cell(system, zero=0.001)
    eps = 1e-7
    for slot in (0,) + tuple(cell.model.free):
        for h, k, l in [(1, 0, 0), (1, 2, 3), (-2, 1, 1), (0, -1, 2), (3, -2, -1)]:
            plus = cell.copy()
            minus = cell.copy()
            plus.par[slot] += eps
            minus.par[slot] -= eps
            numeric = (plus.hkl2d(h, k, l) - minus.hkl2d(h, k, l)) / (2 * eps)
            assert cell.hkl2d(h, k, l, deriv_par=slot) == pytest.approx(numeric, rel=1e-5, abs=1e-8)


@pytest.mark.parametrize("system", list(CrystalSystem))
def test_index_derivatives_match_finite_differences(system):
    cell = make_cell(system)
    eps = 1e-5
    for h, k, l in [(1, 2, 3), (-2, 1, 1), (2, -1, -3)]:
        for axis in (1, 2, 3):
            step = np.zeros(3)
            step[axis - 1] = eps
            plus = cell.hkl2d(h + step[0], k + step[1], l + step[2])
            minus = cell.hkl2d(h - step[0], k - step[1], l - step[2])
            numeric = (plus - minus) / (2 * eps)
            assert cell.hkl2d(h, k, l, deriv_hkl=axis) == pytest.approx(numeric, rel=1e-5, abs=1e-8)


def test_unsupported_derivatives():
    cell = make_cell(CrystalSystem.CUBIC)
    with pytest.raises(UnsupportedDerivativeError):
        cell.hkl2d(1, 0, 0, deriv_par=2)
    with pytest.raises(UnsupportedDerivativeError):
        cell.hkl2d(1, 0, 0, deriv_hkl=4)
    with pytest.raises(ValueError):
        cell.hkl2d(1, 0, 0, deriv_par=1, deriv_hkl=1)
    assert cell.hkl2d(1, 0, 0, deriv_par=0) == 1.0


def test_lattice_model_lookup():
    assert lattice_model("cubic").system == CrystalSystem.CUBIC
    assert lattice_model(1).system == CrystalSystem.MONOCLINIC
    assert lattice_model(CrystalSystem.HEXAGONAL).n_free == 2
    with pytest.raises(ValueError):
        lattice_model("icosahedral")
    with pytest.raises(ValueError):
        lattice_model(9)


def test_too_many_parameters():
    with pytest.raises(ValueError):
        RecUnitCell(np.zeros(8), CrystalSystem.TRICLINIC)


@pytest.mark.parametrize("system", list(CrystalSystem))
def test_hkl2d_delta_brackets_center(system):
    cell = make_cell(system)
    delta = np.full(7, 0.002)
    delta[0] = 0.0
    for h, k, l in HKL:
        dmin, dmax = cell.hkl2d_delta(h, k, l, delta)
        d = cell.hkl2d(h, k, l)
        assert dmin <= d <= dmax


def test_hkl2d_delta_zero_width():
    cell = make_cell(CrystalSystem.TRICLINIC)
    dmin, dmax = cell.hkl2d_delta(1, -2, 3, np.zeros(7))
    assert dmin == pytest.approx(cell.hkl2d(1, -2, 3))
    assert dmax == pytest.approx(cell.hkl2d(1, -2, 3))


@pytest.mark.parametrize("system", MONOTONIC_SYSTEMS)
def test_hkl2d_delta_contains_box(system):
    rng = np.random.default_rng(42)
    cell = make_cell(system)
    delta = np.zeros(7)
    delta[list(cell.model.free)] = 0.01
    delta[0] = 0.001
    for h, k, l in HKL[::7]:
        dmin, dmax = cell.hkl2d_delta(h, k, l, delta)
        for _ in range(20):
            trial = RecUnitCell(cell.par + delta * rng.uniform(-1, 1, 7), system)
            d = trial.hkl2d(h, k, l)
            assert dmin - 1e-12 <= d <= dmax + 1e-12


@pytest.mark.parametrize("system", MONOTONIC_SYSTEMS)
def test_hkl2d_delta_widens(system):
    cell = make_cell(system)
    small = RecUnitCell(np.full(7, 0.001), system)
    large = RecUnitCell(np.full(7, 0.01), system)
    for h, k, l in HKL[::5]:
        lo1, hi1 = cell.hkl2d_delta(h, k, l, small)
        lo2, hi2 = cell.hkl2d_delta(h, k, l, large)
        assert lo2 <= lo1
        assert hi2 >= hi1


MIXED_SIGN_HKL = [hkl for hkl in HKL if hkl[0] * hkl[1] < 0 or hkl[1] * hkl[2] < 0 or hkl[0] * hkl[2] < 0]


@pytest.mark.parametrize("system", list(CrystalSystem))
@pytest.mark.parametrize("small, large", [(0.001, 0.01), (0.01, 0.05)])
def test_hkl2d_delta_widens_on_every_free_slot(system, small, large):
    cell = make_cell(system)
    free = list(cell.model.free)
    narrow = np.zeros(7)
    wide = np.zeros(7)
    narrow[free] = small
    wide[free] = large
    assert MIXED_SIGN_HKL
    for h, k, l in MIXED_SIGN_HKL + [(1, 1, 1), (2, 0, 1)]:
        lo1, hi1 = cell.hkl2d_delta(h, k, l, narrow)
        lo2, hi2 = cell.hkl2d_delta(h, k, l, wide)
        assert lo2 <= lo1 <= cell.hkl2d(h, k, l) <= hi1 <= hi2


def test_hkl2d_delta_clamps_lengths():
    cell = RecUnitCell([0.0, 0.1], CrystalSystem.CUBIC)
    dmin, dmax = cell.hkl2d_delta(1, 1, 0, [0.0, 0.5])
    assert dmin == 0.0
    assert dmax == pytest.approx(2 * 0.6 ** 2)


def test_estimate_cell_volume_triclinic():
    v = estimate_cell_volume(1.5, 10.0, 40, CrystalSystem.TRICLINIC)
    q1 = (1 / 1.5) ** 3 - (1 / 10.0) ** 3
    assert v == pytest.approx(40 / (2.095 * q1))


@pytest.mark.parametrize("system", [s for s in CrystalSystem if s != CrystalSystem.TRICLINIC])
def test_estimate_cell_volume_grows_with_reflections(system):
    v20 = estimate_cell_volume(1.5, 10.0, 20, system)
    v40 = estimate_cell_volume(1.5, 10.0, 40, system)
    assert 0 < v20 < v40


def test_estimate_cell_volume_centering():
    vp = estimate_cell_volume(1.5, 10.0, 20, CrystalSystem.CUBIC, "P")
    vi = estimate_cell_volume(1.5, 10.0, 20, CrystalSystem.CUBIC, "I")
    vf = estimate_cell_volume(1.5, 10.0, 20, CrystalSystem.CUBIC, "F")
    assert vp < vi < vf


def test_estimate_cell_volume_rejects_bad_limits():
    with pytest.raises(ValueError):
        estimate_cell_volume(10.0, 1.5, 20, CrystalSystem.CUBIC)
    with pytest.raises(ValueError):
        estimate_cell_volume(0.0, 1.5, 20, CrystalSystem.CUBIC)


def test_cubic_volume_estimate_is_sensible():
    # Primitive cubic a = 5: count the distinct lines with d in [1.5, 10]
    n = len({h * h + k * k + l * l
             for h, k, l in itertools.product(range(0, 4), repeat=3)
             if 0 < h * h + k * k + l * l and 5.0 / math.sqrt(h * h + k * k + l * l) >= 1.5})
    v = estimate_cell_volume(1.5, 10.0, n, CrystalSystem.CUBIC)
    assert 30 < v < 500
