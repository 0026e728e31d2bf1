"""
Tests for findfoci.runner and findfoci.state.

Covers the stage state machine, option comparison and cached replays.
"""

import threading

import numpy as np
import pytest

from conftest import DelayedCancel

from findfoci import (
    FindFociState,
    MaskMethod,
    OutputOptions,
    PeakMethod,
    Runner,
    SortMethod,
    StateMachine,
    find_foci,
)


def _settings(options, **output):
    return Runner.settings(options, OutputOptions(**output))


def _same_output(a, b):
    assert [r.to_dict() for r in a.results] == [r.to_dict() for r in b.results]
    if a.mask is None:
        assert b.mask is None
    else:
        np.testing.assert_array_equal(a.mask, b.mask)


class TestStateMachine:
    """Tests for StateMachine."""

    def test_starts_complete(self):
        """A new machine has nothing to rerun."""
        assert StateMachine().state == FindFociState.COMPLETE

    def test_state_only_reduces(self):
        """Observing a later stage never raises the state."""
        machine = StateMachine()
        machine.observe("min_size")
        assert machine.state == FindFociState.MERGE_SIZE
        machine.observe("mask_method")
        assert machine.state == FindFociState.MERGE_SIZE
        machine.observe("background_method")
        assert machine.state == FindFociState.FIND_MAXIMA

    def test_unknown_name_resets(self):
        """A change the machine does not know about reruns everything."""
        machine = StateMachine()
        assert machine.observe("no_such_option") == FindFociState.INITIAL

    @pytest.mark.parametrize(
        "name, state",
        [
            ("gaussian_blur", FindFociState.INITIAL),
            ("statistics_method", FindFociState.FIND_MAXIMA),
            ("search_parameter", FindFociState.SEARCH),
            ("peak_parameter", FindFociState.MERGE_HEIGHT),
            ("min_size", FindFociState.MERGE_SIZE),
            ("max_size", FindFociState.MERGE_SADDLE),
            ("centre_method", FindFociState.CALCULATE_RESULTS),
            ("mask_peak_dots", FindFociState.CALCULATE_OUTPUT_MASK),
            ("object_analysis", FindFociState.SHOW_RESULTS),
        ],
    )
    def test_stage_for(self, name, state):
        """Each option maps to the stage that consumes it."""
        assert StateMachine.stage_for(name) == state

    def test_observed_properties_cover_options(self, spots_options):
        """Every processor and output setting is tracked."""
        assert set(_settings(spots_options)) <= StateMachine().observed_properties


class TestCompare:
    """Tests for Runner.compare."""

    def test_no_previous_run(self, spots_options):
        """Without a previous run everything is computed."""
        assert Runner().compare(None, _settings(spots_options)) == FindFociState.INITIAL

    def test_no_change(self, spots_options):
        """Identical settings need no work."""
        s = _settings(spots_options)
        assert Runner().compare(s, dict(s)) == FindFociState.COMPLETE

    def test_earliest_change_wins(self, spots_options):
        """Several changes restart at the earliest affected stage."""
        previous = _settings(spots_options)
        spots_options.sort_method = SortMethod.COUNT
        spots_options.min_size = 2
        assert Runner().compare(previous, _settings(spots_options)) == FindFociState.MERGE_SIZE

    def test_contiguous_needs_minimum_above_saddle(self, spots_options):
        """The contiguous flag only matters when sizing above the saddle."""
        previous = _settings(spots_options)
        current = dict(previous, contiguous_above_saddle=True)
        assert Runner().compare(previous, current) == FindFociState.MERGE_SADDLE

        previous["minimum_above_saddle"] = current["minimum_above_saddle"] = False
        assert Runner().compare(previous, current) == FindFociState.COMPLETE

    def test_fraction_only_for_fraction_masks(self, spots_options):
        """The fraction parameter is ignored by the other mask methods."""
        previous = _settings(spots_options)
        current = dict(previous, fraction_parameter=0.9)
        assert Runner().compare(previous, current) == FindFociState.COMPLETE

        previous["mask_method"] = current["mask_method"] = MaskMethod.FRACTION_OF_HEIGHT
        assert Runner().compare(previous, current) == FindFociState.CALCULATE_OUTPUT_MASK

    def test_output_actions_only_when_enabled(self, spots_options):
        """Turning an output action off needs no work; turning it on does."""
        on = _settings(spots_options, object_analysis=True)
        off = _settings(spots_options)
        assert Runner().compare(on, off) == FindFociState.COMPLETE
        assert Runner().compare(off, on) == FindFociState.SHOW_RESULTS

    def test_memory_name_needs_save(self, spots_options):
        """A new memory name only matters when saving to memory."""
        previous = _settings(spots_options)
        current = _settings(spots_options, memory_name="other")
        assert Runner().compare(previous, current) == FindFociState.COMPLETE

        previous = _settings(spots_options, save_to_memory=True)
        current = _settings(spots_options, save_to_memory=True, memory_name="other")
        assert Runner().compare(previous, current) == FindFociState.SHOW_RESULTS

    def test_max_peaks_depends_on_results(self, spots_image, spots_options):
        """A new peak limit matters only if the previous results reached a limit."""
        runner = Runner()
        spots_options.max_peaks = 2
        runner.run(spots_image, spots_options)
        previous = _settings(spots_options)

        assert runner.compare(previous, dict(previous, max_peaks=5)) == FindFociState.CALCULATE_RESULTS
        assert runner.compare(previous, dict(previous, max_peaks=1)) == FindFociState.CALCULATE_RESULTS

        spots_options.max_peaks = 50
        runner.run(spots_image, spots_options)
        previous = _settings(spots_options)
        assert runner.compare(previous, dict(previous, max_peaks=60)) == FindFociState.COMPLETE
        assert runner.compare(previous, dict(previous, max_peaks=0)) == FindFociState.COMPLETE
        assert runner.compare(previous, dict(previous, max_peaks=2)) == FindFociState.CALCULATE_RESULTS


class TestRunner:
    """Tests for Runner.run."""

    def test_first_run_matches_find_foci(self, spots_image, spots_options):
        """The first run computes everything."""
        runner = Runner()
        output = runner.run(spots_image, spots_options)

        assert runner.last_state == FindFociState.INITIAL
        _same_output(output, find_foci(spots_image, spots_options))

    def test_repeat_run_reuses_results(self, spots_image, spots_options):
        """Running again with the same inputs returns the cached results."""
        runner = Runner()
        first = runner.run(spots_image, spots_options)
        second = runner.run(spots_image, spots_options.copy())

        assert runner.last_state == FindFociState.COMPLETE
        assert second is first

    @pytest.mark.parametrize(
        "name, value, state",
        [
            ("peak_parameter", 0.9, FindFociState.MERGE_HEIGHT),
            ("min_size", 40, FindFociState.MERGE_SIZE),
            ("sort_method", SortMethod.MAX_VALUE, FindFociState.CALCULATE_RESULTS),
            ("mask_method", MaskMethod.PEAKS, FindFociState.CALCULATE_OUTPUT_MASK),
            ("background_parameter", 40.0, FindFociState.SEARCH),
            ("gaussian_blur", 1.0, FindFociState.INITIAL),
        ],
    )
    def test_replay_matches_fresh_run(self, noisy_spots_image, spots_options, name, value, state):
        """A partial rerun gives the same output as a full run with the new options."""
        runner = Runner()
        runner.run(noisy_spots_image, spots_options)
        changed = spots_options.copy()
        setattr(changed, name, value)
        output = runner.run(noisy_spots_image, changed)

        assert runner.last_state == state
        _same_output(output, find_foci(noisy_spots_image, changed))

    def test_peak_method_replay(self, shoulder_profile, absolute_options):
        """Changing the peak height restores the merged shoulder."""
        runner = Runner()
        absolute_options.peak_method = PeakMethod.ABSOLUTE
        absolute_options.peak_parameter = 10.0
        assert len(runner.run(shoulder_profile, absolute_options)) == 1

        changed = absolute_options.copy()
        changed.peak_parameter = 4.0
        assert len(runner.run(shoulder_profile, changed)) == 2
        assert runner.last_state == FindFociState.MERGE_HEIGHT

    def test_new_image_reruns_everything(self, spots_image, spots_options):
        """A different image restarts from the beginning."""
        runner = Runner()
        runner.run(spots_image, spots_options)
        other = spots_image.copy()
        other[0, 0] += 1
        runner.run(other, spots_options)

        assert runner.last_state == FindFociState.INITIAL

    def test_new_mask_reruns_from_find_maxima(self, spots_image, spots_options):
        """A different mask keeps the search image."""
        runner = Runner()
        runner.run(spots_image, spots_options)
        mask = np.zeros(spots_image.shape, dtype=np.uint8)
        mask[:, :24] = 1
        output = runner.run(spots_image, spots_options, mask)

        assert runner.last_state == FindFociState.FIND_MAXIMA
        assert {(r.x, r.y) for r in output.results} == {(12, 12), (10, 36)}

    def test_cancel_clears_cache(self, spots_image, spots_options):
        """A cancelled run returns a cancelled result and the next run starts over."""
        runner = Runner()
        runner.run(spots_image, spots_options)
        cancel = threading.Event()
        cancel.set()
        changed = spots_options.copy()
        changed.peak_parameter = 0.9
        output = runner.run(spots_image, changed, cancel=cancel)

        assert output.cancelled
        runner.run(spots_image, changed)
        assert runner.last_state == FindFociState.INITIAL

    def test_cancel_during_stage(self, noise_image, noise_options):
        """A run cancelled inside a stage leaves no cache behind."""
        runner = Runner()
        runner.run(noise_image, noise_options)
        changed = noise_options.copy()
        changed.min_size = 8
        output = runner.run(noise_image, changed, cancel=DelayedCancel(5))

        assert output.cancelled
        assert output.results == []
        assert output.mask is None
        runner.run(noise_image, changed)
        assert runner.last_state == FindFociState.INITIAL

    def test_object_analysis(self, spots_image, spots_options):
        """Object analysis labels the inclusion mask and tags each result."""
        mask = np.zeros(spots_image.shape, dtype=np.uint8)
        mask[:24, :] = 1
        mask[24:, :] = 2
        output = Runner().run(spots_image, spots_options, mask, output=OutputOptions(object_analysis=True))

        assert output.objects.number_of_objects == 2
        by_position = {(r.x, r.y): (r.object, r.state) for r in output.results}
        assert by_position[(12, 12)] == (1, 1)
        assert by_position[(34, 30)] == (2, 2)
        assert by_position[(10, 36)] == (2, 2)

    def test_object_analysis_without_mask(self, spots_image, spots_options):
        """Without a mask no object analysis is done."""
        output = Runner().run(spots_image, spots_options, output=OutputOptions(object_analysis=True))

        assert output.objects is None

    def test_save_to_memory(self, spots_image, spots_options):
        """Saved results are copies keyed by name."""
        runner = Runner()
        output = runner.run(spots_image, spots_options, output=OutputOptions(save_to_memory=True, memory_name="a"))

        assert list(runner.memory) == ["a"]
        saved = runner.memory["a"]
        assert saved is not output
        assert [r.to_dict() for r in saved.results] == [r.to_dict() for r in output.results]
