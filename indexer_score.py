"""
Indexing Figure of Merit

Scores a candidate reciprocal cell against an observed peak list. Every
distinct reflection up to a cutoff derived from the last observed line is
generated, each observed peak keeps its closest calculated line, and the
quality is summarised by a de Wolff-style figure of merit:

    score = sqrt(dmax) * N / (2 * sum|d2obs - d2calc| * Ncalc)

Key Features:
- JIT-compiled reflection enumeration with per-system sign plans and
  derivative-aware loop cutoffs
- Closest-line matching inside a fixed d*^2 window
- Tolerance for a fixed number of worst-fitting (spurious) peaks
- Optional storage of the best indices and of the full predicted line list
"""

import math

import numpy as np
from numba import njit

from indexer_cell import MONOCLINIC, _hkl2d_core, _hkl2d_dhkl_core

# Peaks further than this (in d*^2) from every calculated line are unmatched
MATCH_WINDOW = 0.1
# Placeholder difference of an unmatched peak
UNMATCHED_DIFF = 1000.0
# Hard limit on |h|, |k|, |l| for degenerate (non positive-definite) metrics
MAX_INDEX = 60
# Lower bound of the summed |d2obs - d2calc|, keeps exact fits finite
MIN_EPSILON = 1e-12


# ==============================================================================
# Growable Buffers
# ==============================================================================

@njit
def _grow_hkl(a, n):
    out = np.empty((2 * a.shape[0] + 16, 3), np.int64)
    out[:n] = a[:n]
    return out


@njit
def _grow_float(a, n):
    out = np.empty(2 * a.shape[0] + 16, np.float64)
    out[:n] = a[:n]
    return out


# ==============================================================================
# Enumeration and Matching Kernel
# ==============================================================================

@njit(fastmath=True)
def _score_core(par, system, sk0, sl0, d2obs, dmax, store_predicted, max_index):
    """JIT-compiled reflection enumeration and closest-line matching.

    Reflections are generated with h >= 0, k and l running over the signs
    allowed by (sk0, sl0). A loop level stops once d*^2 exceeds dmax and the
    derivative along that index shows it is still increasing.

    Args:
        par: Cell parameters (length 7)
        system: Integer crystal system code
        sk0, sl0: Starting signs of k and l (-1 or 1)
        d2obs: Observed d*^2, sorted ascending
        dmax: Enumeration cutoff in d*^2
        store_predicted: Whether every generated line is returned
        max_index: Hard limit on the absolute value of the indices

    Returns:
        Tuple (n_calc, diff, best_hkl, best_d2, pred_hkl, pred_d2)
    """
    n = d2obs.shape[0]
    diff = np.full(n, UNMATCHED_DIFF)
    best_hkl = np.zeros((n, 3), np.int64)
    best_d2 = np.zeros(n, np.float64)
    pred_hkl = np.empty((64, 3), np.int64)
    pred_d2 = np.empty(64, np.float64)
    n_pred = 0
    n_calc = 0

    for h in range(max_index + 1):
        n_h = 0
        sk = sk0
        if h == 0:
            sk = 1
        while sk <= 1:
            k = 0
            if sk < 0:
                k = 1
            while k <= max_index:
                n_k = 0
                sl = sl0
                while sl <= 1:
                    if h + k == 0:
                        sl = 1
                        l = 1
                    elif h == 0:
                        if system == MONOCLINIC:
                            sl = 1
                        if sk < 0 or sl < 0:
                            l = 1
                        else:
                            l = 0
                    elif sl < 0:
                        l = 1
                    else:
                        l = 0
                    while l <= max_index:
                        kk = sk * k
                        ll = sl * l
                        d2 = _hkl2d_core(par, system, h, kk, ll)
                        if d2 > dmax:
                            if sl * _hkl2d_dhkl_core(par, system, h, kk, ll, 3) >= 0.0:
                                break
                            l += 1
                            continue
                        n_calc += 1
                        n_k += 1
                        n_h += 1
                        if store_predicted:
                            if n_pred == pred_d2.shape[0]:
                                pred_hkl = _grow_hkl(pred_hkl, n_pred)
                                pred_d2 = _grow_float(pred_d2, n_pred)
                            pred_hkl[n_pred, 0] = h
                            pred_hkl[n_pred, 1] = kk
                            pred_hkl[n_pred, 2] = ll
                            pred_d2[n_pred] = d2
                            n_pred += 1
                        for i in range(n):
                            tmp = d2 - d2obs[i]
                            if tmp < -MATCH_WINDOW:
                                break
                            if tmp < MATCH_WINDOW and abs(tmp) < abs(diff[i]):
                                diff[i] = tmp
                                best_hkl[i, 0] = h
                                best_hkl[i, 1] = kk
                                best_hkl[i, 2] = ll
                                best_d2[i] = d2
                        l += 1
                    sl += 2
                if n_k == 0 and sk * _hkl2d_dhkl_core(par, system, h, sk * k, 0, 2) >= 0.0:
                    break
                k += 1
            sk += 2
        if n_h == 0:
            break

    return n_calc, diff, best_hkl, best_d2, pred_hkl[:n_pred].copy(), pred_d2[:n_pred].copy()


# ==============================================================================
# Score
# ==============================================================================

def score(peaks, state, cell, nb_spurious=0, store_hkl=False, store_predicted=False,
          max_index=MAX_INDEX):
    """Figure of merit of a candidate cell against a peak list.

    The per-peak differences and the spurious-hit counters of ``state`` are
    always updated. With ``store_hkl`` the best indices, calculated d*^2,
    indexed and spurious flags are written too; with ``store_predicted`` the
    full list of lines up to twice the usual cutoff is kept in
    ``state.predicted_hkl`` / ``state.predicted_d2``.

    Args:
        peaks: PeakList
        state: SearchState of the calling search
        cell: Candidate RecUnitCell
        nb_spurious: Number of worst-fitting peaks left out of the error sum
        store_hkl: Whether per-peak indexing results are stored
        store_predicted: Whether the predicted line list is stored
        max_index: Hard limit on |h|, |k|, |l|

    Returns:
        Score (float); 0 when no line falls below the cutoff
    """
    n = len(peaks)
    if state.n != n:
        raise ValueError(f"Search state holds {state.n} peaks, peak list has {n}")
    if n == 0:
        return 0.0
    if nb_spurious < 0:
        raise ValueError(f"nb_spurious must be non-negative, got {nb_spurious}")

    dmax = peaks.d2obs[-1] * 1.05
    if store_predicted:
        dmax *= 2.0
    sk0, sl0 = cell.model.signs
    n_calc, diff, best_hkl, best_d2, pred_hkl, pred_d2 = _score_core(
        cell.par, int(cell.system), sk0, sl0, peaks.d2obs, dmax, store_predicted, max_index)

    state.d2diff[:] = diff
    matched = diff != UNMATCHED_DIFF
    if store_hkl:
        state.hkl[:] = best_hkl
        state.d2calc[:] = best_d2
        state.is_indexed[:] = matched
        state.is_spurious[:] = False
    if store_predicted:
        state.predicted_hkl = pred_hkl
        state.predicted_d2 = pred_d2

    if n_calc == 0:
        return 0.0

    absdiff = np.abs(diff)
    nb_spurious = min(nb_spurious, n)
    if nb_spurious > 0:
        worst = np.argsort(absdiff, kind="stable")[n - nb_spurious:]
        state.stats[worst] += 1
        if store_hkl:
            state.is_indexed[worst] = False
            state.is_spurious[worst] = True
        absdiff[worst] = 0.0

    epsilon = max(float(absdiff.sum()), MIN_EPSILON)
    return math.sqrt(dmax) * n / (2.0 * epsilon * n_calc)
