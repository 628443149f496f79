"""
Unit Cell Explorer for Powder Indexing

Searches the reciprocal cell parameters of one crystal system that explain an
observed powder peak list. Two complementary strategies share the same
scoring and feasibility primitives:

- Differential evolution over the free parameters, scored with the de Wolff
  style figure of merit.
- DicVol-like dichotomy: coarse boxes of direct lengths, angles and volumes
  are converted to reciprocal parameter boxes and bisected (branch-and-bound)
  as long as every peak can still be indexed.

Key Features:
- Injectable random generator and cancellation event
- Latin hypercube initial population (scipy.stats.qmc) and single-parameter
  exponential mutation
- Per-system macro-cell generators over volume slices
- Explicit work stack for the branch-and-bound search, with an optional
  axis-reflection shortcut
- Least-squares refinement of every reported cell
- Merging of near-identical solutions, preferring the better score and then
  the more constrained crystal system
"""

import itertools
import logging
import math
from collections import namedtuple

import numpy as np
from scipy.stats import qmc

from indexer_cell import CrystalSystem, RecUnitCell, lattice_model
from indexer_dicho import FULL_AND_STORE, STORED, dicho_indexed
from indexer_lsq import LeastSquaresRefiner
from indexer_score import score as score_cell

logger = logging.getLogger(__name__)

CellSolution = namedtuple("CellSolution", ["cell", "score"])

EvolutionResult = namedtuple(
    "EvolutionResult", ["cell", "score", "nit", "nfev", "message", "success"]
)

# Mean absolute difference of (a, b, c, alpha, beta, gamma) below which two
# cells are the same solution; lengths in Angstrom, angles in radians
SIMILAR_CELL_DELTA = 0.005
# Bounds of the refined zero shift
ZERO_SHIFT_LIMIT = 0.01
# Half width factor applied to a parameter fixed from axial reflections
AXIS_NARROWING = 0.0625


def _cell_summary(cell):
    a, b, c, alpha, beta, gamma, v = cell.direct_unit_cell()
    return (f"{cell.system.name:12s} a={a:8.4f} b={b:8.4f} c={c:8.4f} "
            f"alpha={math.degrees(alpha):7.3f} beta={math.degrees(beta):7.3f} "
            f"gamma={math.degrees(gamma):7.3f} V={v:9.2f}")


def similar_cells(c0, c1, delta=SIMILAR_CELL_DELTA):
    """Whether two cells describe the same direct lattice within delta.

    Args:
        c0, c1: RecUnitCell instances (possibly of different systems)
        delta: Threshold on the mean absolute difference of the six direct
            parameters, angles in radians

    Returns:
        bool
    """
    u0 = c0.direct_unit_cell()[:6]
    u1 = c1.direct_unit_cell()[:6]
    return float(np.mean(np.abs(u0 - u1))) < delta


# ==============================================================================
# Differential Evolution Helpers
# ==============================================================================

def _sample_indices_triplets(npop, rng):
    """Sample three distinct random indices for each individual in population.

    All three are different from each other and from the target individual.

    Args:
        npop: Population size (at least 4)
        rng: numpy Generator

    Returns:
        Tuple of (r0, r1, r2) integer arrays of shape (npop,)
    """
    idx = np.arange(npop)
    r0 = rng.integers(0, npop, npop)
    r1 = rng.integers(0, npop, npop)
    r2 = rng.integers(0, npop, npop)

    while True:
        bad = (
            (r0 == idx) | (r1 == idx) | (r2 == idx) |
            (r0 == r1) | (r0 == r2) | (r1 == r2)
        )
        if not bad.any():
            break
        num_bad = int(bad.sum())
        r0[bad] = rng.integers(0, npop, num_bad)
        r1[bad] = rng.integers(0, npop, num_bad)
        r2[bad] = rng.integers(0, npop, num_bad)
    return r0, r1, r2


# ==============================================================================
# Least-Squares Problem
# ==============================================================================

class _CellRefinementProblem:
    """Indexed, non-spurious peaks of a search state as a least-squares problem."""

    def __init__(self, peaks, state, cell, refine_zero=True):
        idx = np.flatnonzero(state.is_indexed & ~state.is_spurious)
        self.cell = cell
        self.hkl = state.hkl[idx].copy()
        self.obs = np.asarray(peaks.d2obs[idx])
        iobs = np.asarray(peaks.iobs[idx])
        thres = float(peaks.iobs.max()) / 10 if len(peaks) else 0.0
        if thres > 0:
            self.weight = np.where(iobs > thres, 1.0, iobs / thres)
        else:
            self.weight = np.ones_like(self.obs)
        self.slots = ([0] if refine_zero else []) + list(cell.model.free)

    def lsq_parameters(self):
        out = []
        for slot in self.slots:
            if slot == 0:
                out.append((0, -ZERO_SHIFT_LIMIT, ZERO_SHIFT_LIMIT))
            else:
                out.append((slot, -np.inf, np.inf))
        return out

    def lsq_obs(self):
        return self.obs

    def lsq_weight(self):
        return self.weight

    def lsq_calc(self):
        return np.array([self.cell.hkl2d(h, k, l) for h, k, l in self.hkl])

    def lsq_deriv(self, slot):
        return np.array([self.cell.hkl2d(h, k, l, deriv_par=slot) for h, k, l in self.hkl])

    def get_lsq_values(self):
        return self.cell.par[self.slots].copy()

    def set_lsq_values(self, x):
        self.cell.par[self.slots] = x


# ==============================================================================
# DicVol Macro-Cells
# ==============================================================================

class _DicVolGrid:
    """Coarse steps of the DicVol scan."""

    def __init__(self, length_range, cos_max):
        self.lmin, self.lmax = length_range
        self.latstep = 0.5
        if (self.lmax - self.lmin) / self.latstep > 25:
            self.latstep = (self.lmax - self.lmin) / 24.9999
        self.cos_max = cos_max
        self.n_cos = max(1, int(math.ceil(cos_max / 0.08)))
        self.cos_step = cos_max / (self.n_cos - 0.0001) if cos_max > 0 else 0.0

    def lengths(self, start=None):
        start = self.lmin if start is None else start
        return np.arange(start, self.lmax, self.latstep)


def _recip_box(x, step, scale=1.0):
    """Center and half width of scale / x for x in [x, x + step]."""
    p_hi = scale / x
    p_lo = scale / (x + step)
    return 0.5 * (p_hi + p_lo), 0.5 * (p_hi - p_lo)


def _box_volumes(system, center, half):
    """Direct volumes of the smallest and the largest cell of a box.

    Only the reciprocal lengths move; angle cosines stay at the center.
    """
    lengths = list(lattice_model(system).lengths)
    upper = center.copy()
    lower = center.copy()
    upper[lengths] += half[lengths]
    lower[lengths] = np.maximum(lower[lengths] - half[lengths], 0.0)
    return RecUnitCell(upper, system).volume(), RecUnitCell(lower, system).volume()


def _boxes_cubic(grid, minv, maxv):
    s = grid.latstep
    for x1 in grid.lengths():
        center = np.zeros(7)
        half = np.zeros(7)
        center[1], half[1] = _recip_box(x1, s)
        if x1 ** 3 > maxv:
            break
        if (x1 + s) ** 3 > minv:
            yield center, half


def _boxes_tetragonal(grid, minv, maxv):
    s = grid.latstep
    for x1 in grid.lengths():
        if x1 * x1 * grid.lmin > maxv:
            break
        for x2 in grid.lengths():
            vsmall = x1 * x1 * x2
            if vsmall > maxv:
                break
            if (x1 + s) ** 2 * (x2 + s) < minv:
                continue
            center = np.zeros(7)
            half = np.zeros(7)
            center[1], half[1] = _recip_box(x1, s)
            center[2], half[2] = _recip_box(x2, s)
            yield center, half


def _boxes_hexagonal(grid, minv, maxv):
    s = grid.latstep
    f = math.sqrt(3.0) / 2
    for x1 in grid.lengths():
        if f * x1 * x1 * grid.lmin > maxv:
            break
        for x2 in grid.lengths():
            if f * x1 * x1 * x2 > maxv:
                break
            if f * (x1 + s) ** 2 * (x2 + s) < minv:
                continue
            center = np.zeros(7)
            half = np.zeros(7)
            # a* = 2 / (sqrt(3) a)
            center[1], half[1] = _recip_box(x1, s, 1.0 / f)
            center[2], half[2] = _recip_box(x2, s)
            yield center, half


def _boxes_rhombohedral(grid, minv, maxv):
    s = grid.latstep
    cstep = grid.cos_step
    ncos = 2 * grid.n_cos if cstep > 0 else 1
    for x1 in grid.lengths():
        for i in range(ncos):
            center = np.zeros(7)
            half = np.zeros(7)
            center[1], half[1] = _recip_box(x1, s)
            center[2] = -grid.cos_max + (i + 0.5) * cstep if cstep > 0 else 0.0
            half[2] = 0.5 * cstep
            vsmall, vlarge = _box_volumes(CrystalSystem.RHOMBOHEDRAL, center, half)
            if vsmall < maxv and vlarge > minv:
                yield center, half


def _boxes_orthorhombic(grid, minv, maxv):
    s = grid.latstep
    for x1 in grid.lengths():
        if x1 ** 3 > maxv:
            break
        for x2 in grid.lengths(x1):
            if x1 * x2 * x2 > maxv:
                break
            for x3 in grid.lengths(x2):
                if x1 * x2 * x3 > maxv:
                    break
                if (x1 + s) * (x2 + s) * (x3 + s) < minv:
                    continue
                center = np.zeros(7)
                half = np.zeros(7)
                center[1], half[1] = _recip_box(x1, s)
                center[2], half[2] = _recip_box(x2, s)
                center[3], half[3] = _recip_box(x3, s)
                yield center, half


def _boxes_monoclinic(grid, minv, maxv):
    """Boxes over cos(beta*), then a <= c and b; None marks the end of an angle step."""
    s = grid.latstep
    cstep = grid.cos_step
    for i in range(grid.n_cos):
        x4 = i * cstep
        cmid = x4 + 0.5 * cstep
        sinbeta = math.sqrt(max(1e-12, 1.0 - cmid * cmid))
        for x1 in grid.lengths():
            if x1 ** 3 * sinbeta > maxv:
                break
            for x2 in grid.lengths():
                if x1 * x2 * x1 * sinbeta > maxv:
                    break
                for x3 in grid.lengths(x1):
                    # |c cos(beta)| < a
                    if x3 * x4 > x1:
                        break
                    if x1 * x2 * x3 * sinbeta > maxv:
                        break
                    if (x1 + s) * (x2 + s) * (x3 + s) * min(1.0, sinbeta + cstep) < minv:
                        continue
                    center = np.zeros(7)
                    half = np.zeros(7)
                    center[1], half[1] = _recip_box(x1, s, 1.0 / sinbeta)
                    center[2], half[2] = _recip_box(x2, s)
                    center[3], half[3] = _recip_box(x3, s, 1.0 / sinbeta)
                    center[4] = cmid
                    half[4] = 0.5 * cstep
                    yield center, half
        yield None


def _boxes_triclinic(grid, minv, maxv):
    """Boxes over obtuse direct angles, then a <= b <= c inside the volume slice."""
    s = grid.latstep
    cstep = grid.cos_step
    cosines = [-i * cstep for i in range(grid.n_cos)] if cstep > 0 else [0.0]
    for calpha in cosines:
        salpha = math.sqrt(max(1e-12, 1.0 - calpha * calpha))
        for cbeta in cosines:
            sbeta = math.sqrt(max(1e-12, 1.0 - cbeta * cbeta))
            for cgamma in cosines:
                # alpha + beta + gamma < 2 pi
                if math.acos(calpha) + math.acos(cbeta) + math.acos(cgamma) > 6:
                    break
                sgamma = math.sqrt(max(1e-12, 1.0 - cgamma * cgamma))
                vv0 = math.sqrt(abs(1 - calpha ** 2 - cbeta ** 2 - cgamma ** 2
                                    + 2 * calpha * cbeta * cgamma))
                if vv0 < 1e-6:
                    continue
                vv = 1.0 / vv0
                calphar = (cbeta * cgamma - calpha) / (sbeta * sgamma)
                cbetar = (calpha * cgamma - cbeta) / (salpha * sgamma)
                cgammar = (calpha * cbeta - cgamma) / (salpha * sbeta)
                for a in np.arange(grid.lmin, grid.lmax - s, s):
                    for b in np.arange(a, grid.lmax - s, s):
                        if abs(b * cgamma) > a:
                            break
                        v0 = a * b * vv0
                        cmin = max(minv / v0, b)
                        cmax = min(maxv / v0 - s, grid.lmax - s)
                        if cmax <= cmin:
                            continue
                        nc = int(math.ceil((cmax - cmin) / s))
                        cstep_len = (cmax - cmin) / (nc - 0.0001)
                        for c in cmin + cstep_len * np.arange(nc):
                            if abs(c * cbeta) > a or abs(c * calpha) > b:
                                break
                            center = np.zeros(7)
                            half = np.zeros(7)
                            center[1], half[1] = _recip_box(a, s, salpha * vv)
                            center[2], half[2] = _recip_box(b, s, sbeta * vv)
                            center[3], half[3] = _recip_box(c, s, sgamma * vv)
                            half[4] = cstep * 0.5 / (salpha * sbeta)
                            half[5] = cstep * 0.5 / (sbeta * sgamma)
                            half[6] = cstep * 0.5 / (salpha * sgamma)
                            center[4] = cgammar + half[4]
                            center[5] = calphar + half[5]
                            center[6] = cbetar + half[6]
                            yield center, half


_DICVOL_BOXES = {
    CrystalSystem.TRICLINIC: _boxes_triclinic,
    CrystalSystem.MONOCLINIC: _boxes_monoclinic,
    CrystalSystem.ORTHORHOMBIC: _boxes_orthorhombic,
    CrystalSystem.HEXAGONAL: _boxes_hexagonal,
    CrystalSystem.RHOMBOHEDRAL: _boxes_rhombohedral,
    CrystalSystem.TETRAGONAL: _boxes_tetragonal,
    CrystalSystem.CUBIC: _boxes_cubic,
}


class _DicVolNode:
    """One box of the branch-and-bound tree."""
    __slots__ = ("center", "half", "depth", "vdepth", "parent", "pending", "n_feasible_children",
                 "feasible")

    def __init__(self, center, half, depth, vdepth, parent=None):
        self.center = center
        self.half = half
        self.depth = depth
        self.vdepth = vdepth
        self.parent = parent
        self.pending = 0
        self.n_feasible_children = 0
        self.feasible = False


# ==============================================================================
# Cell Explorer
# ==============================================================================

class CellExplorer:
    """Search the unit cells of one crystal system that index a peak list.

    Args:
        peaks: PeakList to index
        system: Crystal system searched (CrystalSystem, int or name)
        nb_spurious: Number of peaks allowed to stay unexplained
        length_range: (min, max) direct cell lengths in Angstrom
        angle_range: (min, max) direct cell angles in degrees. Only the maximum
            bounds the search, which always spans 90 degrees up to it
        volume_range: (min, max) direct cell volume in cubic Angstrom
        zero_range: (min, max) of the zero shift explored by evolution()
        min_score_report: Score above which a cell is reported
        max_dicvol_depth: Maximum bisection depth of the dichotomy
        dicvol_depth_report: Minimum depth of a reported dichotomy leaf
        use_axis_heuristic: Narrow parameters from unambiguous h00 / 0k0 / 00l
            lines at the top of the dichotomy (only without spurious peaks)
        rng: Seed or numpy Generator for the stochastic search
        cancel_event: Object with an is_set() method (e.g. threading.Event);
            searches stop, keeping their results, once it is set
        log_every: Generations between two progress messages of evolution()
        lsq_cycles: Refinement cycles for every reported cell
    """

    def __init__(
        self,
        peaks,
        system=CrystalSystem.TRICLINIC,
        nb_spurious=0,
        length_range=(4.0, 25.0),
        angle_range=(90.0, 120.0),
        volume_range=(0.0, 1600.0),
        zero_range=(0.0, 0.0),
        min_score_report=10.0,
        max_dicvol_depth=7,
        dicvol_depth_report=6,
        use_axis_heuristic=True,
        rng=None,
        cancel_event=None,
        log_every=100,
        lsq_cycles=10,
    ):
        if nb_spurious < 0:
            raise ValueError(f"nb_spurious must be non-negative, got {nb_spurious}")
        if not 0 < length_range[0] < length_range[1]:
            raise ValueError(f"Expected 0 < min < max for length_range, got {length_range}")
        if not 0 < angle_range[0] <= angle_range[1] < 180:
            raise ValueError(f"Expected 0 < min <= max < 180 for angle_range, got {angle_range}")
        if not 0 <= volume_range[0] < volume_range[1]:
            raise ValueError(f"Expected 0 <= min < max for volume_range, got {volume_range}")
        if zero_range[0] > zero_range[1]:
            raise ValueError(f"Expected min <= max for zero_range, got {zero_range}")
        if max_dicvol_depth < 1 or dicvol_depth_report < 0:
            raise ValueError("max_dicvol_depth must be >= 1 and dicvol_depth_report >= 0")

        self.peaks = peaks
        self.model = lattice_model(system)
        self.system = self.model.system
        self.state = peaks.new_state()
        self.nb_spurious = int(nb_spurious)
        self.length_range = (float(length_range[0]), float(length_range[1]))
        self.angle_range = (float(angle_range[0]), float(angle_range[1]))
        self.volume_range = (float(volume_range[0]), float(volume_range[1]))
        self.zero_range = (float(zero_range[0]), float(zero_range[1]))
        self.min_score_report = float(min_score_report)
        self.dicvol_depth_report = int(dicvol_depth_report)
        self.max_dicvol_depth = max(int(max_dicvol_depth), self.dicvol_depth_report)
        self.use_axis_heuristic = use_axis_heuristic
        self.rng = np.random.default_rng(rng)
        self.cancel_event = cancel_event
        self.log_every = log_every
        self.lsq_cycles = lsq_cycles

        self.cos_max = abs(math.cos(math.radians(self.angle_range[1])))
        self.lower, self.amplitude = self.model.de_bounds(self.length_range, self.cos_max, self.zero_range)

        self._refiner = LeastSquaresRefiner()
        self._solutions = []
        self.solutions_per_depth = [0] * (self.max_dicvol_depth + 1)
        self.n_boxes = 0
        self._population = None
        self._population_scores = None

    # ------------------------------------------------------------------
    # Solutions
    # ------------------------------------------------------------------

    @property
    def solutions(self):
        return list(self._solutions)

    @property
    def best_score(self):
        return max((s.score for s in self._solutions), default=0.0)

    def _record(self, cell, value, depth=None):
        self._solutions.append(CellSolution(cell, value))
        if depth is not None:
            self.solutions_per_depth[depth] += 1
        logger.info("Solution score=%8.2f %s", value, _cell_summary(cell))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Indexed peaks:\n%s", self.peaks.format_table(self.state))

    def reduce_solutions(self, delta=SIMILAR_CELL_DELTA):
        """Merge similar solutions and sort them by decreasing score.

        Of two similar solutions the higher score wins; on equal scores the
        more constrained crystal system is kept.
        """
        remaining = list(self._solutions)
        reduced = []
        while remaining:
            best = remaining.pop(0)
            keep = []
            for other in remaining:
                if similar_cells(best.cell, other.cell, delta):
                    if (other.score, other.cell.system) > (best.score, best.cell.system):
                        best = other
                else:
                    keep.append(other)
            remaining = keep
            reduced.append(best)
        reduced.sort(key=lambda s: s.score, reverse=True)
        if len(reduced) < len(self._solutions):
            logger.debug("Merged %d solutions into %d", len(self._solutions), len(reduced))
        self._solutions = reduced
        return self.solutions

    # ------------------------------------------------------------------
    # Scoring and refinement
    # ------------------------------------------------------------------

    def _cancelled(self):
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _too_few_peaks(self):
        n_usable = len(self.peaks) - self.nb_spurious
        if n_usable < max(1, self.model.n_free):
            logger.warning("%d usable peaks cannot constrain %d %s parameters: no solution",
                           n_usable, self.model.n_free, self.system.name)
            return True
        return False

    def score(self, cell, store_hkl=False, store_predicted=False):
        """Score a cell against the peak list, using this explorer's search state."""
        return score_cell(self.peaks, self.state, cell, self.nb_spurious, store_hkl, store_predicted)

    def lsq_refine(self, cell, n_cycles=None, refine_zero=True):
        """Least-squares refinement of a cell against its indexed peaks.

        Peaks are indexed with the cell first; spurious peaks are left out.
        Weights are 1 above a tenth of the strongest intensity and decrease
        linearly below.

        Args:
            cell: RecUnitCell to refine (not modified)
            n_cycles: Refinement cycles (defaults to lsq_cycles)
            refine_zero: Whether the zero shift is refined, within +-0.01

        Returns:
            Refined RecUnitCell
        """
        cell = cell.copy()
        self.score(cell, store_hkl=True)
        problem = _CellRefinementProblem(self.peaks, self.state, cell, refine_zero)
        self._refiner.refine(problem, self.lsq_cycles if n_cycles is None else n_cycles)
        lengths = list(cell.model.lengths)
        cell.par[lengths] = np.abs(cell.par[lengths])
        return cell

    def _report(self, cell, depth=None):
        """Score, refine and record a candidate.

        Returns:
            Tuple (cell, score) of the final, possibly refined, cell
        """
        value = self.score(cell, store_hkl=True)
        if value <= 0.5 * self.min_score_report:
            return cell, value
        cell = self.lsq_refine(cell)
        value = self.score(cell, store_hkl=True)
        if value > self.min_score_report:
            self._record(cell, value, depth)
        return cell, value

    # ------------------------------------------------------------------
    # Differential evolution
    # ------------------------------------------------------------------

    def _constrain(self, par):
        """Keep a monoclinic trial above the reciprocal volume floor 1 / Vmax."""
        if self.system != CrystalSystem.MONOCLINIC:
            return
        floor = 1.0 / self.volume_range[1]
        for _ in range(20):
            v0 = par[1] * par[2] * par[3]
            if v0 >= floor:
                break
            i = int(self.rng.integers(1, 4))
            par[i] = min(par[i] * (floor / v0 + 1e-4), self.lower[i] + self.amplitude[i])

    def evolution(self, ng=100, randomize=True, f=0.7, cr=0.5, population_size=30):
        """Differential evolution over the free parameters.

        Each generation mutates one randomly chosen parameter of every member
        (DE/rand/1 with exponential crossover of length one), wrapping the
        result back into its allowed range, and keeps a trial when it scores
        at least as well as the member it replaces.

        Args:
            ng: Number of generations
            randomize: Start from a fresh population instead of the previous one
            f: Mutation factor
            cr: Crossover rate; the single-parameter mutation does not use it
            population_size: Number of members (at least 4)

        Returns:
            EvolutionResult of the best cell after refinement
        """
        if population_size < 4:
            raise ValueError(f"population_size must be at least 4, got {population_size}")
        if ng < 0:
            raise ValueError(f"ng must be non-negative, got {ng}")
        if self._too_few_peaks():
            return EvolutionResult(None, 0.0, 0, 0, "not enough peaks", False)

        rng = self.rng
        lower, amp = self.lower, self.amplitude
        free = np.flatnonzero(amp > 0)
        npop = population_size
        trial_cell = RecUnitCell(None, self.system)

        def evaluate(par):
            trial_cell.par[:] = par
            return self.score(trial_cell)

        nfev = 0
        if randomize or self._population is None or self._population.shape[0] != npop:
            pop = np.tile(lower, (npop, 1))
            pop[:, free] = lower[free] + amp[free] * qmc.LatinHypercube(d=free.size, seed=rng).random(npop)
            for member in pop:
                self._constrain(member)
            scores = np.array([evaluate(p) for p in pop])
            nfev += npop
        else:
            pop = self._population
            scores = self._population_scores

        ibest = int(np.argmax(scores))
        best = pop[ibest].copy()
        best_score = scores[ibest]

        nit = 0
        message = "Maximum number of generations reached"
        for gen in range(ng):
            if self._cancelled():
                message = "Cancelled"
                logger.warning("Evolution cancelled after %d generations", gen)
                break
            r0, r1, r2 = _sample_indices_triplets(npop, rng)
            slots = free[rng.integers(0, free.size, npop)]
            trials = pop.copy()
            for j in range(npop):
                s = slots[j]
                v = pop[r0[j], s] - lower[s] + f * (pop[r1[j], s] - pop[r2[j], s])
                trials[j, s] = lower[s] + np.mod(v + 3 * amp[s], amp[s])
                self._constrain(trials[j])
            trial_scores = np.array([evaluate(t) for t in trials])
            nfev += npop

            improved = trial_scores >= scores
            pop[improved] = trials[improved]
            scores[improved] = trial_scores[improved]

            ibest = int(np.argmax(scores))
            if scores[ibest] > best_score:
                best = pop[ibest].copy()
                best_score = scores[ibest]
            nit = gen + 1
            if self.log_every and nit % self.log_every == 0:
                trial_cell.par[:] = best
                logger.debug("Generation %6d: best score %8.2f %s", nit, best_score, _cell_summary(trial_cell))

        self._population = pop
        self._population_scores = scores

        cell = RecUnitCell(best, self.system)
        n_before = len(self._solutions)
        cell, value = self._report(cell)
        success = len(self._solutions) > n_before
        if success:
            self.reduce_solutions()
        logger.info("Evolution: best score %.2f after %d generations (%d evaluations)", value, nit, nfev)
        return EvolutionResult(cell, value, nit, nfev, message, success)

    # ------------------------------------------------------------------
    # Dichotomy
    # ------------------------------------------------------------------

    def _volume_overlaps(self, center, half, min_v, max_v):
        vsmall, vlarge = _box_volumes(self.system, center, half)
        return not (vsmall > max_v or vlarge < min_v)

    def _narrow_axes(self, node):
        """Fix axis parameters from peaks whose only candidate is h00, 0k0 or 00l.

        Returns:
            True if any parameter was narrowed
        """
        axes = self.model.axes
        sums = {}
        for i in range(len(self.peaks)):
            cands = self.state.candidates(i)
            if cands.shape[0] != 1:
                continue
            nonzero = np.flatnonzero(cands[0])
            if nonzero.size != 1:
                continue
            slot = axes[nonzero[0]]
            est = self.peaks.dobs[i] / abs(cands[0][nonzero[0]])
            total, count = sums.get(slot, (0.0, 0))
            sums[slot] = (total + est, count + 1)
        if not sums:
            return False
        free = self.model.free
        for slot, (total, count) in sums.items():
            node.center[slot] = total / count
            node.half[slot] *= AXIS_NARROWING
            node.vdepth[free.index(slot)] = max(self.dicvol_depth_report, node.depth)
        node.depth = max(node.depth, min(self.max_dicvol_depth, int(node.vdepth.min())))
        return True

    def _test_box(self, node, min_v, max_v):
        if 0 < node.depth <= 2 and not self._volume_overlaps(node.center, node.half, min_v, max_v):
            return False
        cell = RecUnitCell(node.center, self.system)
        self.n_boxes += 1
        if node.depth == 0:
            ok = dicho_indexed(self.peaks, self.state, cell, node.half, self.nb_spurious, FULL_AND_STORE)
            if ok and self.use_axis_heuristic and self.nb_spurious == 0 and self.model.axes:
                saved = (node.center.copy(), node.half.copy(), node.depth, node.vdepth.copy())
                if self._narrow_axes(node):
                    cell = RecUnitCell(node.center, self.system)
                    if not dicho_indexed(self.peaks, self.state, cell, node.half, self.nb_spurious, STORED):
                        node.center, node.half, node.depth, node.vdepth = saved
            return ok
        return dicho_indexed(self.peaks, self.state, cell, node.half, self.nb_spurious, STORED)

    def _children(self, node):
        free = self.model.free
        half = node.half.copy()
        half[0] *= 0.5
        split = []
        for pos, slot in enumerate(free):
            if node.vdepth[pos] <= node.depth:
                half[slot] *= 0.5
                split.append(slot)
        depth = node.depth + 1
        vdepth = np.maximum(node.vdepth, depth)
        children = []
        for signs in itertools.product((-1.0, 1.0), repeat=len(split)):
            center = node.center.copy()
            for sign, slot in zip(signs, split):
                center[slot] += sign * half[slot]
            children.append(_DicVolNode(center, half.copy(), depth, vdepth.copy(), node))
        return children

    def _finish(self, node):
        """Close a node and every ancestor whose children are all done."""
        while node is not None:
            if node.feasible and node.n_feasible_children == 0 and node.depth >= self.dicvol_depth_report:
                self._report(RecUnitCell(node.center, self.system), node.depth)
            parent = node.parent
            if parent is None:
                return
            if node.feasible:
                parent.n_feasible_children += 1
            parent.pending -= 1
            if parent.pending > 0:
                return
            node = parent

    def rdicvol(self, center, half_width, depth=0, min_v=None, max_v=None, vdepth=None):
        """Branch-and-bound search below one parameter box.

        Boxes are processed depth first from an explicit stack. A feasible box
        is bisected along every free parameter not already fixed more finely;
        a feasible box without feasible children, deep enough, is scored,
        refined and recorded.

        Args:
            center: 7 parameter values at the box center
            half_width: 7 half widths
            depth: Depth of the starting box
            min_v, max_v: Volume window (defaults to volume_range)
            vdepth: Per free parameter depth reached so far (defaults to depth)

        Returns:
            Number of feasible boxes in the explored tree
        """
        if not 0 <= depth <= self.max_dicvol_depth:
            raise ValueError(f"depth must lie in [0, {self.max_dicvol_depth}], got {depth}")
        min_v = self.volume_range[0] if min_v is None else min_v
        max_v = self.volume_range[1] if max_v is None else max_v
        if vdepth is None:
            vdepth = np.full(self.model.n_free, depth, dtype=np.int64)
        vdepth = np.maximum(np.asarray(vdepth, dtype=np.int64), depth)
        root = _DicVolNode(np.array(center, dtype=np.float64), np.abs(np.array(half_width, dtype=np.float64)),
                           depth, vdepth)
        stack = [root]
        n_feasible = 0
        while stack:
            if self._cancelled():
                logger.warning("Dichotomy cancelled")
                break
            node = stack.pop()
            node.feasible = self._test_box(node, min_v, max_v)
            if node.feasible:
                n_feasible += 1
                if node.depth < self.max_dicvol_depth:
                    children = self._children(node)
                    node.pending = len(children)
                    stack.extend(reversed(children))
                    continue
            self._finish(node)
        return n_feasible

    def _stop_reached(self, stop_on_score, stop_on_depth):
        if self.best_score <= stop_on_score:
            return False
        return any(n > 1 for n in self.solutions_per_depth[stop_on_depth:])

    def dicvol(self, min_score=None, min_depth=None, stop_on_score=50.0, stop_on_depth=6):
        """Dichotomy search over coarse boxes of lengths, angles and volume.

        Args:
            min_score: Score above which a leaf is reported; defaults to
                min_score_report
            min_depth: Minimum depth of a reported leaf; defaults to
                dicvol_depth_report
            stop_on_score: Best score needed to stop early
            stop_on_depth: Depth from which more than one solution is needed
                to stop early

        Returns:
            Merged solutions sorted by decreasing score
        """
        if min_score is not None:
            self.min_score_report = float(min_score)
        if min_depth is not None:
            self.dicvol_depth_report = int(min_depth)
        if self.dicvol_depth_report > self.max_dicvol_depth:
            self.max_dicvol_depth = self.dicvol_depth_report
        self.solutions_per_depth = [0] * (self.max_dicvol_depth + 1)
        if self._too_few_peaks():
            return self.solutions

        grid = _DicVolGrid(self.length_range, self.cos_max)
        vmin, vmax = self.volume_range
        n_slices = min(10, max(1, int(math.ceil((vmax - vmin) / 500))))
        edges = np.linspace(vmin, vmax, n_slices + 1)
        zero_center = 0.5 * (self.zero_range[0] + self.zero_range[1])
        zero_half = 0.5 * (self.zero_range[1] - self.zero_range[0])
        boxes = _DICVOL_BOXES[self.system]

        logger.info("DicVol %s: lengths %.2f-%.2f step %.3f, cos(angle) step %.4f, %d volume slices",
                    self.system.name, grid.lmin, grid.lmax, grid.latstep, grid.cos_step, n_slices)
        n_boxes0 = self.n_boxes
        stopped = False
        for minv, maxv in zip(edges[:-1], edges[1:]):
            logger.debug("Volume slice %.1f-%.1f", minv, maxv)
            for box in boxes(grid, minv, maxv):
                if self._cancelled():
                    logger.warning("DicVol cancelled")
                    stopped = True
                    break
                if box is None:
                    if self._stop_reached(stop_on_score, stop_on_depth):
                        stopped = True
                        break
                    continue
                center, half = box
                center[0] = zero_center
                half[0] = zero_half
                self.rdicvol(center, half, 0, minv, maxv)
            if stopped or self._stop_reached(stop_on_score, stop_on_depth):
                break

        self.reduce_solutions()
        logger.info("DicVol %s: %d boxes tested, %d solutions, best score %.2f",
                    self.system.name, self.n_boxes - n_boxes0, len(self._solutions), self.best_score)
        if self._solutions:
            logger.info("Best: %s", _cell_summary(self._solutions[0].cell))
        return self.solutions
