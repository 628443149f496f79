import numpy as np
import pytest

from indexer_peaks import ObservedPeak, PeakList, SearchState


def test_from_d_spacing_sorts_by_reciprocal_spacing():
    peaks = PeakList.from_d_spacing([3.0, 5.0, 4.0], iobs=[10.0, 50.0, 30.0])
    assert peaks.dobs == pytest.approx([1 / 5.0, 1 / 4.0, 1 / 3.0])
    assert peaks.iobs == pytest.approx([50.0, 30.0, 10.0])
    assert np.all(np.diff(peaks.d2obs) > 0)


def test_default_sigma_and_window():
    peaks = PeakList.from_d_spacing([4.0])
    s = 4.0 * 0.001
    assert peaks.dobs_sigma[0] == pytest.approx(1 / (4.0 - s / 2) - 1 / (4.0 + s / 2))
    assert peaks.d2obs_min[0] < peaks.d2obs[0] < peaks.d2obs_max[0]
    assert peaks.iobs[0] == 1.0


def test_non_positive_sigma_and_intensity_are_replaced():
    peaks = PeakList.from_d_spacing([4.0, 2.0], d_sigma=[0.0, 0.01], iobs=[-1.0, 5.0])
    # sorted: d = 4 first
    assert peaks.dobs_sigma[0] == pytest.approx(1 / (4.0 - 0.002) - 1 / (4.0 + 0.002))
    assert peaks.dobs_sigma[1] == pytest.approx(1 / (2.0 - 0.005) - 1 / (2.0 + 0.005))
    assert peaks.iobs.tolist() == [1.0, 5.0]


def test_columns_are_read_only():
    peaks = PeakList.from_d_spacing([3.0, 4.0])
    with pytest.raises(ValueError):
        peaks.dobs[0] = 1.0
    with pytest.raises(ValueError):
        peaks.d2obs_max[0] = 1.0


def test_invalid_input():
    with pytest.raises(ValueError):
        PeakList.from_d_spacing([3.0, -1.0])
    with pytest.raises(ValueError):
        PeakList([0.1, 0.0], 0.001)
    with pytest.raises(ValueError):
        PeakList([0.1], -0.001)


def test_from_two_theta():
    wavelength = 1.5406
    d = np.array([4.0, 3.0, 2.5])
    two_theta = 2 * np.degrees(np.arcsin(wavelength / (2 * d)))
    peaks = PeakList.from_two_theta(two_theta, wavelength)
    assert peaks.dobs == pytest.approx(np.sort(1 / d))
    with pytest.raises(ValueError):
        PeakList.from_two_theta([20.0], 0.0)
    with pytest.raises(ValueError):
        PeakList.from_two_theta([190.0], wavelength)


def test_from_two_theta_sigma_propagation():
    wavelength = 1.5406
    peaks = PeakList.from_two_theta([30.0], wavelength, two_theta_sigma=[0.02])
    coarse = PeakList.from_two_theta([30.0], wavelength, two_theta_sigma=[0.2])
    assert 0 < peaks.dobs_sigma[0] < coarse.dobs_sigma[0]


def test_sequence_protocol():
    peaks = PeakList.from_d_spacing([3.0, 4.0], iobs=[2.0, 7.0])
    assert len(peaks) == 2
    first = peaks[0]
    assert isinstance(first, ObservedPeak)
    assert first.dobs == pytest.approx(0.25)
    assert first.iobs == 7.0
    assert first.d2obs == pytest.approx(0.0625)
    assert [p.dobs for p in peaks] == pytest.approx([0.25, 1 / 3.0])


def test_add_peak_returns_new_sorted_list():
    peaks = PeakList.from_d_spacing([3.0, 5.0])
    more = peaks.add_peak(0.25, iobs=20.0)
    assert len(peaks) == 2
    assert len(more) == 3
    assert more.dobs[1] == pytest.approx(0.25)
    assert more.dobs_sigma[1] == pytest.approx(np.mean(peaks.dobs_sigma))
    assert more.iobs[1] == 20.0


def test_add_peak_to_empty_list():
    empty = PeakList.from_peaks([])
    one = empty.add_peak(0.2)
    assert len(one) == 1
    assert one.dobs_sigma[0] == pytest.approx(0.2e-3)


def test_remove_peak():
    peaks = PeakList.from_d_spacing([3.0, 4.0, 5.0])
    fewer = peaks.remove_peak(0)
    assert len(fewer) == 2
    assert fewer.dobs == pytest.approx([0.25, 1 / 3.0])
    assert len(peaks.remove_peak(-1)) == 2
    with pytest.raises(IndexError):
        peaks.remove_peak(3)


def test_search_state_is_independent_of_peaks():
    peaks = PeakList.from_d_spacing([3.0, 4.0, 5.0])
    state = peaks.new_state()
    assert isinstance(state, SearchState)
    assert len(state) == 3
    assert state.hkl.shape == (3, 3)
    assert not state.is_indexed.any()
    assert state.candidates(1).shape == (0, 3)


def test_search_state_candidates():
    state = SearchState(2)
    offsets = np.array([0, 1, 3])
    hkl = np.array([[1, 0, 0], [1, 1, 0], [0, 0, 2]])
    state.set_candidates(offsets, hkl)
    assert state.candidates(0).tolist() == [[1, 0, 0]]
    assert state.candidates(1).tolist() == [[1, 1, 0], [0, 0, 2]]
    assert state.n_indexed == 0
    state.is_indexed[0] = True
    assert state.n_indexed == 1
    with pytest.raises(ValueError):
        state.set_candidates(np.array([0, 1]), hkl)


def test_format_table():
    peaks = PeakList.from_d_spacing([3.0, 4.0])
    state = peaks.new_state()
    state.hkl[0] = (1, 0, 0)
    state.is_indexed[0] = True
    table = peaks.format_table(state).splitlines()
    assert len(table) == 3
    assert "indexed" in table[1]
    assert len(peaks.format_table().splitlines()) == 3
