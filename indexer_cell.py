"""
Reciprocal Unit Cell Model for Powder Indexing

This module holds the reciprocal-space unit cell used by the indexing searches.
A cell is a vector of seven parameters: a global zero shift followed by the
reciprocal lengths and angle cosines that the crystal system leaves free.

Key Features:
- JIT-compiled d*^2 metric, its derivatives and sign-aware interval bounds
- One strategy object per crystal system (free parameters, enumeration plan,
  reciprocal metric conversion, search bounds)
- Direct cell conversion with domain clamping
- Construction from direct cell parameters through gemmi
- Empirical cell volume estimate from the number of observed reflections
"""

import math
from enum import IntEnum

import gemmi
import numpy as np
from numba import njit


# ==============================================================================
# Crystal Systems
# ==============================================================================

TRICLINIC = 0
MONOCLINIC = 1
ORTHORHOMBIC = 2
HEXAGONAL = 3
RHOMBOHEDRAL = 4
TETRAGONAL = 5
CUBIC = 6

N_PAR = 7


class CrystalSystem(IntEnum):
    """Crystal systems, ordered from least to most constrained."""
    TRICLINIC = TRICLINIC
    MONOCLINIC = MONOCLINIC
    ORTHORHOMBIC = ORTHORHOMBIC
    HEXAGONAL = HEXAGONAL
    RHOMBOHEDRAL = RHOMBOHEDRAL
    TETRAGONAL = TETRAGONAL
    CUBIC = CUBIC


class UnsupportedDerivativeError(ValueError):
    """Raised when a derivative is requested for a parameter the system does not use."""


# ==============================================================================
# JIT Metric Kernels
# ==============================================================================

@njit(fastmath=True)
def _hkl2d_core(par, system, h, k, l):
    """JIT-compiled d*^2 for one reflection.

    Args:
        par: Parameter vector of length 7
        system: Integer crystal system code
        h, k, l: Miller indices

    Returns:
        Squared reciprocal spacing including the zero shift
    """
    x = float(h)
    y = float(k)
    z = float(l)
    if system == TRICLINIC:
        return (par[0] + par[1] * par[1] * x * x + par[2] * par[2] * y * y
                + par[3] * par[3] * z * z
                + 2.0 * par[1] * par[2] * par[4] * x * y
                + 2.0 * par[2] * par[3] * par[5] * y * z
                + 2.0 * par[1] * par[3] * par[6] * x * z)
    if system == MONOCLINIC:
        return (par[0] + par[1] * par[1] * x * x + par[2] * par[2] * y * y
                + par[3] * par[3] * z * z + 2.0 * par[1] * par[3] * par[4] * x * z)
    if system == ORTHORHOMBIC:
        return par[0] + par[1] * par[1] * x * x + par[2] * par[2] * y * y + par[3] * par[3] * z * z
    if system == HEXAGONAL:
        return par[0] + par[1] * par[1] * (x * x + y * y + x * y) + par[2] * par[2] * z * z
    if system == RHOMBOHEDRAL:
        return par[0] + par[1] * par[1] * (x * x + y * y + z * z
                                           + 2.0 * par[2] * (x * y + y * z + x * z))
    if system == TETRAGONAL:
        return par[0] + par[1] * par[1] * (x * x + y * y) + par[2] * par[2] * z * z
    return par[0] + par[1] * par[1] * (x * x + y * y + z * z)


@njit(fastmath=True)
def _hkl2d_dhkl_core(par, system, h, k, l, axis):
    """JIT-compiled derivative of d*^2 with respect to h (1), k (2) or l (3)."""
    x = float(h)
    y = float(k)
    z = float(l)
    p1 = par[1]
    p2 = par[2]
    p3 = par[3]
    if system == TRICLINIC:
        if axis == 1:
            return 2.0 * p1 * p1 * x + 2.0 * p1 * p2 * par[4] * y + 2.0 * p1 * p3 * par[6] * z
        if axis == 2:
            return 2.0 * p2 * p2 * y + 2.0 * p1 * p2 * par[4] * x + 2.0 * p2 * p3 * par[5] * z
        return 2.0 * p3 * p3 * z + 2.0 * p2 * p3 * par[5] * y + 2.0 * p1 * p3 * par[6] * x
    if system == MONOCLINIC:
        if axis == 1:
            return 2.0 * p1 * p1 * x + 2.0 * p1 * p3 * par[4] * z
        if axis == 2:
            return 2.0 * p2 * p2 * y
        return 2.0 * p3 * p3 * z + 2.0 * p1 * p3 * par[4] * x
    if system == ORTHORHOMBIC:
        if axis == 1:
            return 2.0 * p1 * p1 * x
        if axis == 2:
            return 2.0 * p2 * p2 * y
        return 2.0 * p3 * p3 * z
    if system == HEXAGONAL:
        if axis == 1:
            return p1 * p1 * (2.0 * x + y)
        if axis == 2:
            return p1 * p1 * (2.0 * y + x)
        return 2.0 * p2 * p2 * z
    if system == RHOMBOHEDRAL:
        if axis == 1:
            return p1 * p1 * (2.0 * x + 2.0 * p2 * (y + z))
        if axis == 2:
            return p1 * p1 * (2.0 * y + 2.0 * p2 * (x + z))
        return p1 * p1 * (2.0 * z + 2.0 * p2 * (x + y))
    if system == TETRAGONAL:
        if axis == 1:
            return 2.0 * p1 * p1 * x
        if axis == 2:
            return 2.0 * p1 * p1 * y
        return 2.0 * p2 * p2 * z
    if axis == 1:
        return 2.0 * p1 * p1 * x
    if axis == 2:
        return 2.0 * p1 * p1 * y
    return 2.0 * p1 * p1 * z


@njit(fastmath=True)
def _hkl2d_dpar_core(par, system, h, k, l, ipar):
    """JIT-compiled derivative of d*^2 with respect to parameter slot ipar.

    Slots the system does not use have a zero derivative; validation of the
    request happens in the Python wrapper.
    """
    if ipar == 0:
        return 1.0
    x = float(h)
    y = float(k)
    z = float(l)
    p1 = par[1]
    p2 = par[2]
    p3 = par[3]
    if system == TRICLINIC:
        if ipar == 1:
            return 2.0 * p1 * x * x + 2.0 * p2 * par[4] * x * y + 2.0 * p3 * par[6] * x * z
        if ipar == 2:
            return 2.0 * p2 * y * y + 2.0 * p1 * par[4] * x * y + 2.0 * p3 * par[5] * y * z
        if ipar == 3:
            return 2.0 * p3 * z * z + 2.0 * p2 * par[5] * y * z + 2.0 * p1 * par[6] * x * z
        if ipar == 4:
            return 2.0 * p1 * p2 * x * y
        if ipar == 5:
            return 2.0 * p2 * p3 * y * z
        if ipar == 6:
            return 2.0 * p1 * p3 * x * z
        return 0.0
    if system == MONOCLINIC:
        if ipar == 1:
            return 2.0 * p1 * x * x + 2.0 * p3 * par[4] * x * z
        if ipar == 2:
            return 2.0 * p2 * y * y
        if ipar == 3:
            return 2.0 * p3 * z * z + 2.0 * p1 * par[4] * x * z
        if ipar == 4:
            return 2.0 * p1 * p3 * x * z
        return 0.0
    if system == ORTHORHOMBIC:
        if ipar == 1:
            return 2.0 * p1 * x * x
        if ipar == 2:
            return 2.0 * p2 * y * y
        if ipar == 3:
            return 2.0 * p3 * z * z
        return 0.0
    if system == HEXAGONAL:
        if ipar == 1:
            return 2.0 * p1 * (x * x + y * y + x * y)
        if ipar == 2:
            return 2.0 * p2 * z * z
        return 0.0
    if system == RHOMBOHEDRAL:
        if ipar == 1:
            return 2.0 * p1 * (x * x + y * y + z * z + 2.0 * p2 * (x * y + y * z + x * z))
        if ipar == 2:
            return 2.0 * p1 * p1 * (x * y + y * z + x * z)
        return 0.0
    if system == TETRAGONAL:
        if ipar == 1:
            return 2.0 * p1 * (x * x + y * y)
        if ipar == 2:
            return 2.0 * p2 * z * z
        return 0.0
    if ipar == 1:
        return 2.0 * p1 * (x * x + y * y + z * z)
    return 0.0


@njit(fastmath=True)
def _n_lengths(system):
    """Number of reciprocal length slots, which always start at slot 1."""
    if system <= ORTHORHOMBIC:
        return 3
    if system == HEXAGONAL or system == TETRAGONAL:
        return 2
    return 1


@njit(fastmath=True)
def _hkl2d_delta_core(par, dpar, system, h, k, l):
    """JIT-compiled (dmin, dmax) of d*^2 over the box par +- dpar.

    Each slot is moved towards the bound that lowers (or raises) d*^2,
    judged from the sign of the partial derivative at the center. The sign
    of a derivative depends on the signs of h, k, l and of their pairwise
    products through the cross terms. Reciprocal lengths are kept positive.

    Args:
        par: Center parameters (length 7)
        dpar: Half widths (length 7)
        system: Integer crystal system code
        h, k, l: Miller indices

    Returns:
        Tuple (dmin, dmax) bracketing the center value
    """
    lo = np.empty(N_PAR, np.float64)
    hi = np.empty(N_PAR, np.float64)
    for i in range(N_PAR):
        g = _hkl2d_dpar_core(par, system, h, k, l, i)
        w = abs(dpar[i])
        if g >= 0.0:
            lo[i] = par[i] - w
            hi[i] = par[i] + w
        else:
            lo[i] = par[i] + w
            hi[i] = par[i] - w
    for i in range(1, _n_lengths(system) + 1):
        if lo[i] < 0.0:
            lo[i] = 0.0
        if hi[i] < 0.0:
            hi[i] = 0.0
    d = _hkl2d_core(par, system, h, k, l)
    dmin = _hkl2d_core(lo, system, h, k, l)
    dmax = _hkl2d_core(hi, system, h, k, l)
    if dmin > d:
        dmin = d
    if dmax < d:
        dmax = d
    return dmin, dmax


# ==============================================================================
# Crystal System Strategies
# ==============================================================================

class LatticeModel:
    """Capabilities of one crystal system.

    Attributes:
        system: CrystalSystem tag
        free: Parameter slots (besides the zero shift) used by the metric
        lengths: Slots holding reciprocal lengths
        cosines: Slots holding reciprocal angle cosines
        axes: Slots estimated from h00 / 0k0 / 00l reflections, or None
        signs: Starting sign of k and l in the reflection enumeration
    """
    system = None
    free = ()
    lengths = ()
    cosines = ()
    axes = None
    signs = (1, 1)
    symmetric_cosines = False

    @property
    def n_free(self):
        return len(self.free)

    def reciprocal_metric(self, par):
        """Return (a*, b*, c*, cos alpha*, cos beta*, cos gamma*)."""
        raise NotImplementedError

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        """Return the 7-slot parameter vector (zero shift left at 0)."""
        raise NotImplementedError

    def length_bounds(self, slot, lmin, lmax):
        """Reciprocal range of a length slot for direct lengths in [lmin, lmax]."""
        return 1.0 / lmax, 1.0 / lmin

    def de_bounds(self, length_range, cos_max, zero_range=(0.0, 0.0)):
        """Lower bounds and amplitudes of every slot for the stochastic search.

        Args:
            length_range: (min, max) direct cell lengths in Angstrom
            cos_max: Largest absolute reciprocal angle cosine allowed
            zero_range: (min, max) of the zero shift

        Returns:
            Tuple (lower, amplitude) of float64 arrays of length 7
        """
        lo = np.zeros(N_PAR)
        amp = np.zeros(N_PAR)
        lo[0] = zero_range[0]
        amp[0] = zero_range[1] - zero_range[0]
        for slot in self.lengths:
            rmin, rmax = self.length_bounds(slot, length_range[0], length_range[1])
            lo[slot] = rmin
            amp[slot] = rmax - rmin
        for slot in self.cosines:
            if self.symmetric_cosines:
                lo[slot] = -cos_max
                amp[slot] = 2.0 * cos_max
            else:
                lo[slot] = 0.0
                amp[slot] = cos_max
        return lo, amp


class TriclinicModel(LatticeModel):
    system = CrystalSystem.TRICLINIC
    free = (1, 2, 3, 4, 5, 6)
    lengths = (1, 2, 3)
    cosines = (4, 5, 6)
    axes = (1, 2, 3)
    signs = (-1, -1)

    def reciprocal_metric(self, par):
        return par[1], par[2], par[3], par[5], par[6], par[4]

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, bstar, cstar, cgamma, calpha, cbeta])


class MonoclinicModel(LatticeModel):
    system = CrystalSystem.MONOCLINIC
    free = (1, 2, 3, 4)
    lengths = (1, 2, 3)
    cosines = (4,)
    axes = (1, 2, 3)
    signs = (1, -1)

    def reciprocal_metric(self, par):
        return par[1], par[2], par[3], 0.0, par[4], 0.0

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, bstar, cstar, cbeta, 0.0, 0.0])


class OrthorhombicModel(LatticeModel):
    system = CrystalSystem.ORTHORHOMBIC
    free = (1, 2, 3)
    lengths = (1, 2, 3)
    axes = (1, 2, 3)
    signs = (1, 1)

    def reciprocal_metric(self, par):
        return par[1], par[2], par[3], 0.0, 0.0, 0.0

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, bstar, cstar, 0.0, 0.0, 0.0])


class HexagonalModel(LatticeModel):
    system = CrystalSystem.HEXAGONAL
    free = (1, 2)
    lengths = (1, 2)
    signs = (-1, 1)

    def reciprocal_metric(self, par):
        return par[1], par[1], par[2], 0.0, 0.0, 0.5

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, cstar, 0.0, 0.0, 0.0, 0.0])

    def length_bounds(self, slot, lmin, lmax):
        if slot == 1:
            # a* = 2 / (sqrt(3) a)
            return 2.0 / (math.sqrt(3.0) * lmax), 2.0 / (math.sqrt(3.0) * lmin)
        return 1.0 / lmax, 1.0 / lmin


class RhombohedralModel(LatticeModel):
    system = CrystalSystem.RHOMBOHEDRAL
    free = (1, 2)
    lengths = (1,)
    cosines = (2,)
    signs = (-1, -1)
    symmetric_cosines = True

    def reciprocal_metric(self, par):
        return par[1], par[1], par[1], par[2], par[2], par[2]

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, calpha, 0.0, 0.0, 0.0, 0.0])


class TetragonalModel(LatticeModel):
    system = CrystalSystem.TETRAGONAL
    free = (1, 2)
    lengths = (1, 2)
    signs = (1, 1)

    def reciprocal_metric(self, par):
        return par[1], par[1], par[2], 0.0, 0.0, 0.0

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, cstar, 0.0, 0.0, 0.0, 0.0])


class CubicModel(LatticeModel):
    system = CrystalSystem.CUBIC
    free = (1,)
    lengths = (1,)
    signs = (1, 1)

    def reciprocal_metric(self, par):
        return par[1], par[1], par[1], 0.0, 0.0, 0.0

    def from_reciprocal_metric(self, astar, bstar, cstar, calpha, cbeta, cgamma):
        return np.array([0.0, astar, 0.0, 0.0, 0.0, 0.0, 0.0])


LATTICE_MODELS = {
    CrystalSystem.TRICLINIC: TriclinicModel(),
    CrystalSystem.MONOCLINIC: MonoclinicModel(),
    CrystalSystem.ORTHORHOMBIC: OrthorhombicModel(),
    CrystalSystem.HEXAGONAL: HexagonalModel(),
    CrystalSystem.RHOMBOHEDRAL: RhombohedralModel(),
    CrystalSystem.TETRAGONAL: TetragonalModel(),
    CrystalSystem.CUBIC: CubicModel(),
}


def lattice_model(system):
    """Return the strategy object of a crystal system (name, int or CrystalSystem)."""
    if isinstance(system, str):
        try:
            system = CrystalSystem[system.upper()]
        except KeyError:
            raise ValueError(f"Unknown crystal system: {system!r}")
    try:
        return LATTICE_MODELS[CrystalSystem(system)]
    except ValueError:
        raise ValueError(f"Unknown crystal system: {system!r}")


# ==============================================================================
# Reciprocal Unit Cell
# ==============================================================================

_EPS = 1e-12


class RecUnitCell:
    """Reciprocal unit cell: zero shift plus system-dependent metric parameters.

    Args:
        par: Up to 7 parameter values; missing slots are zero
        system: Crystal system (CrystalSystem, int or name)
    """

    def __init__(self, par=None, system=CrystalSystem.TRICLINIC):
        self.model = lattice_model(system)
        self.system = self.model.system
        self.par = np.zeros(N_PAR, dtype=np.float64)
        if par is not None:
            p = np.asarray(par, dtype=np.float64).ravel()
            if p.size > N_PAR:
                raise ValueError(f"RecUnitCell takes at most {N_PAR} parameters, got {p.size}")
            self.par[:p.size] = p

    def copy(self):
        return RecUnitCell(self.par.copy(), self.system)

    def __repr__(self):
        values = ", ".join(f"{p:.6f}" for p in self.par)
        return f"RecUnitCell({self.system.name}, [{values}])"

    def hkl2d(self, h, k, l, deriv_par=None, deriv_hkl=0):
        """Squared reciprocal spacing of (h, k, l), or one of its derivatives.

        Args:
            h, k, l: Miller indices
            deriv_par: Parameter slot to differentiate against (0 is the zero shift)
            deriv_hkl: 1, 2 or 3 to differentiate against h, k or l

        Returns:
            d*^2, or the requested partial derivative

        Raises:
            UnsupportedDerivativeError: If the slot is not used by the crystal
                system, deriv_hkl is out of range, or both are requested
        """
        if deriv_par is None and deriv_hkl == 0:
            return _hkl2d_core(self.par, int(self.system), h, k, l)
        if deriv_par is not None and deriv_hkl != 0:
            raise UnsupportedDerivativeError("Cannot differentiate against a parameter and an index at once")
        if deriv_par is not None:
            if deriv_par != 0 and deriv_par not in self.model.free:
                raise UnsupportedDerivativeError(
                    f"{self.system.name} cell has no parameter slot {deriv_par}")
            return _hkl2d_dpar_core(self.par, int(self.system), h, k, l, int(deriv_par))
        if deriv_hkl not in (1, 2, 3):
            raise UnsupportedDerivativeError(f"deriv_hkl must be 1, 2 or 3, got {deriv_hkl}")
        return _hkl2d_dhkl_core(self.par, int(self.system), h, k, l, int(deriv_hkl))

    def hkl2d_delta(self, h, k, l, delta):
        """Range of d*^2 when every parameter moves within +-delta.

        Args:
            h, k, l: Miller indices
            delta: RecUnitCell or array of 7 half widths

        Returns:
            Tuple (dmin, dmax)
        """
        if isinstance(delta, RecUnitCell):
            dpar = delta.par
        else:
            dpar = np.zeros(N_PAR)
            d = np.asarray(delta, dtype=np.float64).ravel()
            if d.size > N_PAR:
                raise ValueError(f"delta takes at most {N_PAR} values, got {d.size}")
            dpar[:d.size] = d
        return _hkl2d_delta_core(self.par, dpar, int(self.system), h, k, l)

    def reciprocal_metric(self):
        return self.model.reciprocal_metric(self.par)

    def direct_unit_cell(self):
        """Direct cell (a, b, c, alpha, beta, gamma, V), angles in radians.

        Arguments of square roots and arc-cosines are clamped to their domain
        so that slightly inconsistent parameters never produce NaN.
        """
        astar, bstar, cstar, ca, cb, cg = self.model.reciprocal_metric(self.par)
        astar, bstar, cstar = abs(astar), abs(bstar), abs(cstar)
        ca = min(1.0, max(-1.0, ca))
        cb = min(1.0, max(-1.0, cb))
        cg = min(1.0, max(-1.0, cg))
        sa = math.sqrt(max(0.0, 1.0 - ca * ca))
        sb = math.sqrt(max(0.0, 1.0 - cb * cb))
        sg = math.sqrt(max(0.0, 1.0 - cg * cg))
        vv = math.sqrt(max(0.0, 1.0 - ca * ca - cb * cb - cg * cg + 2.0 * ca * cb * cg))
        vv = max(vv, _EPS)

        a = sa / max(astar * vv, _EPS)
        b = sb / max(bstar * vv, _EPS)
        c = sg / max(cstar * vv, _EPS)

        alpha = math.acos(min(1.0, max(-1.0, (cb * cg - ca) / max(sb * sg, _EPS))))
        beta = math.acos(min(1.0, max(-1.0, (ca * cg - cb) / max(sa * sg, _EPS))))
        gamma = math.acos(min(1.0, max(-1.0, (ca * cb - cg) / max(sa * sb, _EPS))))

        v = 1.0 / max(astar * bstar * cstar * vv, _EPS)
        return np.array([a, b, c, alpha, beta, gamma, v])

    def volume(self):
        return self.direct_unit_cell()[6]

    def to_gemmi(self):
        """Direct cell as a gemmi.UnitCell (angles in degrees)."""
        a, b, c, alpha, beta, gamma, _ = self.direct_unit_cell()
        return gemmi.UnitCell(a, b, c, math.degrees(alpha), math.degrees(beta), math.degrees(gamma))

    @classmethod
    def from_direct_cell(cls, a, b, c, alpha, beta, gamma, system, zero=0.0):
        """Build a reciprocal cell from direct parameters.

        Args:
            a, b, c: Direct lengths in Angstrom
            alpha, beta, gamma: Direct angles in degrees
            system: Crystal system the parameters are mapped onto
            zero: Zero shift stored in slot 0

        Returns:
            RecUnitCell
        """
        rec = gemmi.UnitCell(a, b, c, alpha, beta, gamma).reciprocal()
        model = lattice_model(system)
        par = model.from_reciprocal_metric(
            rec.a, rec.b, rec.c,
            math.cos(math.radians(rec.alpha)),
            math.cos(math.radians(rec.beta)),
            math.cos(math.radians(rec.gamma)))
        par[0] = zero
        return cls(par, model.system)


# ==============================================================================
# Cell Volume Estimate
# ==============================================================================

_VOLUME_C0_D0 = {
    CrystalSystem.MONOCLINIC: (1.047, 0.786 * 0.85),
    CrystalSystem.ORTHORHOMBIC: (0.524, 1.36 * 0.85),
    CrystalSystem.HEXAGONAL: (0.150, 1.04 * 0.85),
    CrystalSystem.RHOMBOHEDRAL: (0.230, 1.04 * 0.85),
    CrystalSystem.TETRAGONAL: (0.214, 1.25 * 0.85),
}

_CUBIC_D0 = {"P": 0.862, "I": 0.475, "F": 0.354}


def estimate_cell_volume(dmin, dmax, nbrefl, system, centering="P", kappa=1.0):
    """Empirical cell volume from the number of reflections between two d limits.

    Args:
        dmin: Smallest observed d-spacing in Angstrom
        dmax: Largest observed d-spacing in Angstrom
        nbrefl: Number of observed reflections between dmin and dmax
        system: Crystal system
        centering: Lattice centering letter (P, I, A, B, C, F; R is treated as P)
        kappa: Fraction of the predicted reflections assumed observed

    Returns:
        Estimated direct cell volume in cubic Angstrom
    """
    if dmin <= 0 or dmax <= dmin:
        raise ValueError(f"Expected 0 < dmin < dmax, got dmin={dmin}, dmax={dmax}")
    system = lattice_model(system).system
    centering = centering.upper()
    smax = 1.0 / dmin
    smin = 1.0 / dmax
    q1 = smax ** 3 - smin ** 3
    q2 = smax ** 2 - smin ** 2

    if system == CrystalSystem.TRICLINIC:
        return nbrefl / (2.095 * kappa * q1)
    if system == CrystalSystem.CUBIC:
        d0 = _CUBIC_D0.get(centering, _CUBIC_D0["P"])
        return (nbrefl / (d0 * kappa * q2)) ** 1.5

    c0, d0 = _VOLUME_C0_D0[system]
    if centering in ("I", "A", "B", "C"):
        c0 /= 2.0
        d0 /= 2.0
    elif centering == "F":
        c0 /= 4.0
        d0 /= 4.0
    alpha = d0 * q2 / (3.0 * c0 * q1)
    beta = nbrefl / (2.0 * kappa * c0 * q1)
    eta = beta - alpha ** 3
    gamma = math.sqrt(max(0.0, beta * beta - 2.0 * beta * alpha ** 3))
    return float((np.cbrt(eta + gamma) + np.cbrt(eta - gamma) - alpha) ** 3)
