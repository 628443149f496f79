"""
Observed Peak List and Search State

Observed peaks are immutable: a PeakList is built once, sorted by reciprocal
spacing, and its columns are read-only numpy arrays. Everything a search
writes (assigned indices, indexed / spurious flags, candidate reflections)
lives in a separate SearchState owned by that search.

Key Features:
- Construction from d-spacings or 2-theta positions with default uncertainties
- Precomputed squared reciprocal spacings and their observation window
- Copy-on-write peak addition and removal
- Parallel mutable search state with compact candidate storage
"""

from collections import namedtuple

import numpy as np


# ==============================================================================
# Observed Peaks
# ==============================================================================

class ObservedPeak(namedtuple("ObservedPeak", ["dobs", "dobs_sigma", "iobs", "iobs_sigma"])):
    """One observed line: reciprocal spacing 1/d, its sigma and intensity."""
    __slots__ = ()

    @property
    def d2obs(self):
        return self.dobs * self.dobs

    @property
    def d2obs_min(self):
        return (self.dobs - self.dobs_sigma / 2) ** 2

    @property
    def d2obs_max(self):
        return (self.dobs + self.dobs_sigma / 2) ** 2


def _readonly(a):
    a = np.ascontiguousarray(a, dtype=np.float64)
    a.flags.writeable = False
    return a


class PeakList:
    """Immutable list of observed peaks sorted ascending by reciprocal spacing.

    Args:
        dobs: Reciprocal spacings 1/d
        dobs_sigma: Uncertainties of dobs
        iobs: Intensities (defaults to 1)
        iobs_sigma: Intensity uncertainties (defaults to 0)
    """

    def __init__(self, dobs, dobs_sigma, iobs=None, iobs_sigma=None):
        dobs = np.atleast_1d(np.asarray(dobs, dtype=np.float64))
        n = dobs.shape[0]
        if dobs.ndim != 1:
            raise ValueError(f"dobs must be one-dimensional, got shape {dobs.shape}")
        dobs_sigma = np.broadcast_to(np.asarray(dobs_sigma, dtype=np.float64), (n,))
        iobs = np.ones(n) if iobs is None else np.broadcast_to(np.asarray(iobs, dtype=np.float64), (n,))
        iobs_sigma = np.zeros(n) if iobs_sigma is None else np.broadcast_to(
            np.asarray(iobs_sigma, dtype=np.float64), (n,))
        if np.any(dobs <= 0) or not np.all(np.isfinite(dobs)):
            raise ValueError("Reciprocal spacings must be finite and positive")
        if np.any(dobs_sigma < 0):
            raise ValueError("Reciprocal spacing uncertainties must be non-negative")

        order = np.argsort(dobs, kind="stable")
        self.dobs = _readonly(dobs[order])
        self.dobs_sigma = _readonly(dobs_sigma[order])
        self.iobs = _readonly(iobs[order])
        self.iobs_sigma = _readonly(iobs_sigma[order])
        self.d2obs = _readonly(self.dobs * self.dobs)
        self.d2obs_min = _readonly((self.dobs - self.dobs_sigma / 2) ** 2)
        self.d2obs_max = _readonly((self.dobs + self.dobs_sigma / 2) ** 2)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_d_spacing(cls, d, d_sigma=None, iobs=None, default_sigma=0.001):
        """Build a list from direct-space d-spacings.

        Args:
            d: d-spacings in Angstrom
            d_sigma: Uncertainties of d; non-positive or missing values become
                d * default_sigma
            iobs: Intensities; non-positive or missing values become 1
            default_sigma: Relative uncertainty used when none is given

        Returns:
            PeakList
        """
        d = np.atleast_1d(np.asarray(d, dtype=np.float64))
        if np.any(d <= 0):
            raise ValueError("d-spacings must be positive")
        if d_sigma is None:
            sigma = d * default_sigma
        else:
            sigma = np.broadcast_to(np.asarray(d_sigma, dtype=np.float64), d.shape).copy()
            bad = sigma <= 0
            sigma[bad] = d[bad] * default_sigma
        sigma = np.minimum(sigma, 1.9 * d)
        if iobs is None:
            inten = np.ones_like(d)
        else:
            inten = np.broadcast_to(np.asarray(iobs, dtype=np.float64), d.shape).copy()
            inten[inten <= 0] = 1.0
        dobs = 1.0 / d
        dobs_sigma = 1.0 / (d - sigma / 2) - 1.0 / (d + sigma / 2)
        return cls(dobs, dobs_sigma, inten)

    @classmethod
    def from_two_theta(cls, two_theta, wavelength, iobs=None, two_theta_sigma=None, default_sigma=0.001):
        """Build a list from 2-theta positions in degrees.

        Args:
            two_theta: Peak positions (degrees)
            wavelength: Radiation wavelength in Angstrom
            iobs: Intensities; non-positive or missing values become 1
            two_theta_sigma: Position uncertainties (degrees). When missing the
                relative d uncertainty default_sigma is used.
            default_sigma: Relative uncertainty used when none is given

        Returns:
            PeakList
        """
        if wavelength <= 0:
            raise ValueError(f"wavelength must be positive, got {wavelength}")
        tt = np.radians(np.atleast_1d(np.asarray(two_theta, dtype=np.float64)))
        if np.any(tt <= 0) or np.any(tt >= np.pi):
            raise ValueError("2-theta values must lie in (0, 180) degrees")
        d = wavelength / (2.0 * np.sin(tt / 2))
        if two_theta_sigma is None:
            return cls.from_d_spacing(d, None, iobs, default_sigma)
        s = np.radians(np.broadcast_to(np.asarray(two_theta_sigma, dtype=np.float64), tt.shape))
        # dd = d * cot(theta) * dtheta
        d_sigma = d / np.tan(tt / 2) * (s / 2)
        return cls.from_d_spacing(d, d_sigma, iobs, default_sigma)

    @classmethod
    def from_peaks(cls, peaks):
        peaks = list(peaks)
        if not peaks:
            return cls(np.zeros(0), np.zeros(0))
        cols = np.array(peaks, dtype=np.float64)
        return cls(cols[:, 0], cols[:, 1], cols[:, 2], cols[:, 3])

    # ------------------------------------------------------------------
    # Sequence protocol
    # ------------------------------------------------------------------

    def __len__(self):
        return self.dobs.shape[0]

    def __getitem__(self, i):
        return ObservedPeak(float(self.dobs[i]), float(self.dobs_sigma[i]),
                            float(self.iobs[i]), float(self.iobs_sigma[i]))

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    def __repr__(self):
        return f"PeakList({len(self)} peaks)"

    # ------------------------------------------------------------------
    # Copy-on-write edits
    # ------------------------------------------------------------------

    def add_peak(self, dobs, iobs=1.0, dobs_sigma=0.0, iobs_sigma=0.0):
        """Return a new list with one more peak.

        A non-positive sigma is replaced by the mean sigma of the existing
        peaks (or by 0.1% of dobs when the list is empty).
        """
        if dobs_sigma <= 0:
            dobs_sigma = float(np.mean(self.dobs_sigma)) if len(self) else dobs * 1e-3
        if iobs <= 0:
            iobs = 1.0
        peaks = list(self) + [ObservedPeak(dobs, dobs_sigma, iobs, iobs_sigma)]
        return PeakList.from_peaks(peaks)

    def remove_peak(self, index):
        """Return a new list without the peak at position index."""
        n = len(self)
        if not -n <= index < n:
            raise IndexError(f"Peak index {index} out of range for {n} peaks")
        peaks = list(self)
        del peaks[index]
        return PeakList.from_peaks(peaks)

    def new_state(self):
        return SearchState(len(self))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def format_table(self, state=None):
        """Text table of the peaks, with indexing results when a state is given."""
        lines = ["   d       1/d     sigma(1/d)   Iobs" +
                 ("      h   k   l   d*2obs    d*2calc   flags" if state is not None else "")]
        for i in range(len(self)):
            line = (f"{1.0 / self.dobs[i]:8.4f} {self.dobs[i]:8.5f} {self.dobs_sigma[i]:10.6f}"
                    f" {self.iobs[i]:9.2f}")
            if state is not None:
                h, k, l = state.hkl[i]
                flags = ("indexed " if state.is_indexed[i] else "") + ("spurious" if state.is_spurious[i] else "")
                line += (f"  {h:3d} {k:3d} {l:3d} {self.d2obs[i]:9.6f} {state.d2calc[i]:9.6f}"
                         f"   {flags}")
            lines.append(line)
        return "\n".join(lines)


# ==============================================================================
# Search State
# ==============================================================================

class SearchState:
    """Mutable per-peak scratch space of one search.

    Arrays are indexed like the PeakList they were made for. Candidate
    reflections are stored compactly: the candidates of peak i are
    cand_hkl[cand_offsets[i]:cand_offsets[i + 1]].
    """

    def __init__(self, n):
        self.n = n
        self.hkl = np.zeros((n, 3), dtype=np.int64)
        self.is_indexed = np.zeros(n, dtype=np.bool_)
        self.is_spurious = np.zeros(n, dtype=np.bool_)
        self.stats = np.zeros(n, dtype=np.int64)
        self.d2calc = np.zeros(n, dtype=np.float64)
        self.d2diff = np.zeros(n, dtype=np.float64)
        self.cand_offsets = np.zeros(n + 1, dtype=np.int64)
        self.cand_hkl = np.zeros((0, 3), dtype=np.int64)
        self.predicted_hkl = np.zeros((0, 3), dtype=np.int64)
        self.predicted_d2 = np.zeros(0, dtype=np.float64)

    def __len__(self):
        return self.n

    def candidates(self, i):
        """Candidate (h, k, l) rows recorded for peak i."""
        return self.cand_hkl[self.cand_offsets[i]:self.cand_offsets[i + 1]]

    def set_candidates(self, offsets, hkl):
        if offsets.shape[0] != self.n + 1:
            raise ValueError(f"Expected {self.n + 1} candidate offsets, got {offsets.shape[0]}")
        self.cand_offsets = offsets
        self.cand_hkl = hkl

    @property
    def n_indexed(self):
        return int(np.count_nonzero(self.is_indexed))
