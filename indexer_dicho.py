"""
Dichotomy Feasibility Test

Decides whether a box of reciprocal cell parameters (center +- half width)
can still explain the observed peaks: every peak but a tolerated number of
unindexed ones must overlap the d*^2 interval of at least one reflection
evaluated over the whole box.

Key Features:
- Full reflection enumeration with interval bounds and a shrinking window of
  still-unindexed peaks
- Recording of every compatible reflection per peak for reuse deeper in the
  branch-and-bound tree
- Fast re-test of recorded candidates with early success and early failure
"""

import numpy as np
from numba import njit

from indexer_cell import MONOCLINIC, N_PAR, RecUnitCell, _hkl2d_delta_core, _hkl2d_dhkl_core
from indexer_score import MAX_INDEX, _grow_hkl

FULL = 0
STORED = 1
FULL_AND_STORE = 2


# ==============================================================================
# JIT Kernels
# ==============================================================================

@njit
def _grow_int(a, n):
    out = np.empty(2 * a.shape[0] + 16, np.int64)
    out[:n] = a[:n]
    return out


@njit
def _pack_candidates(n, cand_peak, cand_hkl, n_cand):
    """Group candidate rows by peak into (offsets, hkl) arrays."""
    offsets = np.zeros(n + 1, np.int64)
    for j in range(n_cand):
        offsets[cand_peak[j] + 1] += 1
    for i in range(n):
        offsets[i + 1] += offsets[i]
    out = np.empty((n_cand, 3), np.int64)
    cursor = offsets[:n].copy()
    for j in range(n_cand):
        p = cand_peak[j]
        out[cursor[p], 0] = cand_hkl[j, 0]
        out[cursor[p], 1] = cand_hkl[j, 1]
        out[cursor[p], 2] = cand_hkl[j, 2]
        cursor[p] += 1
    return offsets, out


@njit(fastmath=True)
def _dicho_full_core(par, dpar, system, sk0, sl0, d2min, d2max, nb_unindexed, store,
                     is_indexed, d2calc, max_index):
    """JIT-compiled feasibility test by full reflection enumeration.

    Args:
        par, dpar: Box center and half widths (length 7)
        system: Integer crystal system code
        sk0, sl0: Starting signs of k and l
        d2min, d2max: Observed d*^2 window of each peak
        nb_unindexed: Number of peaks allowed to stay unindexed
        store: Whether every overlapping reflection is recorded
        is_indexed, d2calc: Per-peak output arrays
        max_index: Hard limit on |h|, |k|, |l|

    Returns:
        Tuple (feasible, offsets, hkl); offsets / hkl are empty unless store
    """
    n = d2min.shape[0]
    for i in range(n):
        is_indexed[i] = False
    remaining = n - nb_unindexed
    cand_peak = np.empty(64, np.int64)
    cand_hkl = np.empty((64, 3), np.int64)
    n_cand = 0

    first = 0
    last = n
    dmin = d2min[0]
    dmax = d2max[n - 1]

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
                        d0, d1 = _hkl2d_delta_core(par, dpar, system, h, kk, ll)
                        if d0 > dmax:
                            if sl * _hkl2d_dhkl_core(par, system, h, kk, ll, 3) >= 0.0:
                                break
                            l += 1
                            continue
                        n_k += 1
                        n_h += 1
                        if d1 < dmin:
                            l += 1
                            continue
                        for i in range(first, last):
                            if is_indexed[i] and not store:
                                continue
                            if d2max[i] >= d0 and d1 >= d2min[i]:
                                if not is_indexed[i]:
                                    is_indexed[i] = True
                                    d2calc[i] = 0.5 * (d0 + d1)
                                    remaining -= 1
                                if store:
                                    if n_cand == cand_peak.shape[0]:
                                        cand_peak = _grow_int(cand_peak, n_cand)
                                        cand_hkl = _grow_hkl(cand_hkl, n_cand)
                                    cand_peak[n_cand] = i
                                    cand_hkl[n_cand, 0] = h
                                    cand_hkl[n_cand, 1] = kk
                                    cand_hkl[n_cand, 2] = ll
                                    n_cand += 1
                                else:
                                    if remaining <= 0:
                                        return True, np.zeros(n + 1, np.int64), np.zeros((0, 3), np.int64)
                                    if i == first:
                                        while first < last and is_indexed[first]:
                                            first += 1
                                        if first < last:
                                            dmin = d2min[first]
                                    if i == last - 1:
                                        while last > first and is_indexed[last - 1]:
                                            last -= 1
                                        if last > first:
                                            dmax = d2max[last - 1]
                        l += 1
                    sl += 2
                if n_k == 0 and sk * _hkl2d_dhkl_core(par, system, h, sk * k, 0, 2) >= 0.0:
                    break
                k += 1
            sk += 2
        if n_h == 0:
            break

    if store:
        offsets, hkl = _pack_candidates(n, cand_peak, cand_hkl, n_cand)
        return remaining <= 0, offsets, hkl
    return remaining <= 0, np.zeros(n + 1, np.int64), np.zeros((0, 3), np.int64)


@njit(fastmath=True)
def _dicho_stored_core(par, dpar, system, d2min, d2max, offsets, cand_hkl, nb_unindexed,
                       is_indexed, d2calc):
    """JIT-compiled feasibility test over previously recorded candidates."""
    n = d2min.shape[0]
    for i in range(n):
        is_indexed[i] = False
    remaining = n - nb_unindexed
    missed = 0
    for i in range(n):
        for j in range(offsets[i], offsets[i + 1]):
            d0, d1 = _hkl2d_delta_core(par, dpar, system, cand_hkl[j, 0], cand_hkl[j, 1], cand_hkl[j, 2])
            if d2max[i] >= d0 and d1 >= d2min[i]:
                is_indexed[i] = True
                d2calc[i] = 0.5 * (d0 + d1)
                remaining -= 1
                break
        if is_indexed[i]:
            if remaining <= 0:
                return True
        else:
            missed += 1
            if missed > nb_unindexed:
                return False
    return remaining <= 0


# ==============================================================================
# DichoIndexed
# ==============================================================================

def dicho_indexed(peaks, state, cell, delta, nb_unindexed=0, use_stored_hkl=FULL,
                  max_index=MAX_INDEX):
    """Test whether a parameter box can index the peak list.

    Args:
        peaks: PeakList
        state: SearchState receiving indexed flags, calculated d*^2 and,
            in mode 2, the candidate reflections
        cell: RecUnitCell at the box center
        delta: RecUnitCell or array of 7 half widths
        nb_unindexed: Number of peaks allowed to stay unindexed
        use_stored_hkl: 0 for full enumeration, 1 to re-test the stored
            candidates, 2 for full enumeration recording the candidates
        max_index: Hard limit on |h|, |k|, |l|

    Returns:
        True if at least len(peaks) - nb_unindexed peaks are indexed
    """
    n = len(peaks)
    if state.n != n:
        raise ValueError(f"Search state holds {state.n} peaks, peak list has {n}")
    if use_stored_hkl not in (FULL, STORED, FULL_AND_STORE):
        raise ValueError(f"use_stored_hkl must be 0, 1 or 2, got {use_stored_hkl}")
    if nb_unindexed < 0:
        raise ValueError(f"nb_unindexed must be non-negative, got {nb_unindexed}")
    if n == 0 or n <= nb_unindexed:
        return False

    if isinstance(delta, RecUnitCell):
        dpar = delta.par
    else:
        dpar = np.zeros(N_PAR)
        d = np.asarray(delta, dtype=np.float64).ravel()
        dpar[:d.size] = d
    system = int(cell.system)

    if use_stored_hkl == STORED:
        return bool(_dicho_stored_core(cell.par, dpar, system, peaks.d2obs_min, peaks.d2obs_max,
                                       state.cand_offsets, state.cand_hkl, nb_unindexed,
                                       state.is_indexed, state.d2calc))

    sk0, sl0 = cell.model.signs
    ok, offsets, hkl = _dicho_full_core(cell.par, dpar, system, sk0, sl0, peaks.d2obs_min,
                                        peaks.d2obs_max, nb_unindexed, use_stored_hkl == FULL_AND_STORE,
                                        state.is_indexed, state.d2calc, max_index)
    if use_stored_hkl == FULL_AND_STORE:
        state.set_candidates(offsets, hkl)
    return bool(ok)
