import asyncio
import logging
import threading
import time
import typing

import pytest

import gridloop.engine
import gridloop.output
import gridloop.placement

from conftest import EventLog, FakeOutput, FakeVoice


class WallClockOutput (FakeOutput):

	"""Fake output whose clock follows real time, for tests of the tick task."""

	def current_time (self) -> float:

		"""Return a monotonic wall-clock time."""

		return time.monotonic()


def _columns (event_log: EventLog) -> list[int]:

	"""Return the column of every grid_cell_changed event in order."""

	return [args[0] for args in event_log.named("grid_cell_changed")]


def test_play_dispatches_first_column_at_once (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""Column 0 is dispatched by play() itself, due at the current clock time."""

	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))

	engine.play()

	assert event_log.named("grid_cell_changed") == [(0, 10.0)]
	assert [(v.asset, v.start_time) for v in output.voices] == [("k", 10.0)]
	assert engine.get_status().column == 0
	assert engine.get_status().next_deadline == 10.125


def test_columns_only_dispatched_inside_lookahead (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""A column is dispatched once its deadline is within the look-ahead window."""

	engine.play()
	output.advance(0.02)
	engine.schedule_ahead()

	assert _columns(event_log) == [0]

	output.advance(0.03)
	engine.schedule_ahead()

	assert event_log.named("grid_cell_changed")[-1] == (1, 10.125)


def test_triggers_carry_exact_deadlines (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Voices start at origin plus whole cells, never at the tick time."""

	engine.add_track("hat")

	for column in range(16):
		engine.add_placement("hat", column, gridloop.placement.Single("h"))

	engine.play()

	# Irregular ticks.
	for step in (0.031, 0.077, 0.12, 0.009, 0.2, 0.05, 0.33):
		output.advance(step)
		engine.schedule_ahead()

	starts = [v.start_time for v in output.voices]

	assert starts == [pytest.approx(10.0 + i * 0.125) for i in range(len(starts))]
	assert len(starts) > 5


def test_loop_wraps_to_column_zero (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""With looping on the column after the last is column 0, one cell later."""

	engine.play()

	for _ in range(16):
		output.advance(0.125)
		engine.schedule_ahead()

	assert _columns(event_log) == list(range(16)) + [0]
	assert event_log.named("grid_cell_changed")[-1] == (0, 12.0)
	assert engine.get_status().is_playing


def test_deadlines_do_not_drift (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""After many measures the deadline is still origin plus cells times cell length."""

	engine.set_bpm(97)
	engine.play()
	cell = engine.cell_seconds

	for _ in range(400):
		output.advance(0.05)
		engine.schedule_ahead()

	events = event_log.named("grid_cell_changed")

	assert len(events) > 100
	assert events[-1][1] == pytest.approx(10.0 + (len(events) - 1) * cell, abs=1e-9)


def test_no_loop_stops_at_end_of_measure (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""With looping off the transport stops instead of wrapping."""

	engine.set_looping(False)
	engine.play()

	for _ in range(16):
		output.advance(0.125)
		engine.schedule_ahead()

	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED
	assert _columns(event_log) == list(range(16)) + [-1]
	assert event_log.named("stop") == [()]


def test_single_kick_measure (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""A two-beat measure at 600 BPM plays the kick once and stops."""

	engine.set_bpm(600)
	engine.configure_grid(2, 4, 4)
	engine.set_looping(False)
	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("kick"))

	assert engine.cell_seconds == pytest.approx(0.1)
	assert engine.columns_per_measure == 2

	engine.play()

	for _ in range(10):

		if engine.get_status().state is gridloop.engine.TransportState.STOPPED:
			break

		output.advance(0.1)
		engine.schedule_ahead()

	assert _columns(event_log) == [0, 1, -1]
	assert [(v.asset, v.start_time) for v in output.voices] == [("kick", 10.0)]
	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED


def test_no_loop_waits_for_the_last_column (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""With cells shorter than the look-ahead, the final columns still start before the stop."""

	engine.set_bpm(600)
	engine.configure_grid(2, 16, 16)
	engine.set_looping(False)
	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("a"))
	engine.add_placement("kick", 1, gridloop.placement.Single("b"))

	engine.play()

	assert [(v.asset, v.start_time) for v in output.voices] == [("a", 10.0), ("b", pytest.approx(10.025))]
	assert engine.get_status().is_playing

	output.advance(0.03)
	engine.schedule_ahead()

	assert engine.get_status().is_playing
	assert not any(v.cancelled for v in output.voices)

	output.advance(0.03)
	engine.schedule_ahead()

	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED
	assert _columns(event_log) == [0, 1, -1]


def test_muted_track_not_triggered (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""A muted track's cells are skipped."""

	engine.add_track("kick")
	engine.add_track("snare")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))
	engine.add_placement("snare", 0, gridloop.placement.Single("s"))
	engine.set_track_muted("snare", True)

	engine.play()

	assert [v.asset for v in output.voices] == ["k"]


def test_tracks_dispatched_in_insertion_order (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Simultaneous cells trigger in the order their tracks were added."""

	for name in ("iya", "itotele", "okonkolo"):
		engine.add_track(name)
		engine.add_placement(name, 0, gridloop.placement.Single(name))

	engine.play()

	assert [v.asset for v in output.voices] == ["iya", "itotele", "okonkolo"]


def test_combined_placement_triggers_two_voices (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""A combined cell starts primary and accent together, the accent boosted to full level."""

	engine.add_track("iya")
	engine.set_track_volume("iya", 0.5)
	engine.add_placement("iya", 0, gridloop.placement.Combined("open", "slap"))

	engine.play()

	assert [(v.asset, v.start_time, v.gain) for v in output.voices] == [("open", 10.0, 1.0), ("slap", 10.0, 1.0)]

	primary, accent = output.voices
	assert primary.stage.effective_gain() == 0.5
	assert accent.stage.effective_gain() == 1.0


def test_accent_stays_within_unity_when_volume_rises (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Raising the track volume under a sounding accent never lifts it above 1.0."""

	engine.add_track("iya")
	engine.set_track_volume("iya", 0.25)
	engine.add_placement("iya", 0, gridloop.placement.Combined("open", "slap"))

	engine.play()

	accent = output.voices[1]
	assert accent.gain * accent.stage.effective_gain() == pytest.approx(0.75)

	engine.set_track_volume("iya", 1.0)

	assert accent.gain <= 1.0
	assert accent.gain * accent.stage.effective_gain() == 1.0

	engine.set_track_muted("iya", True)

	assert accent.stage.effective_gain() == 0.0

	engine.set_master_volume(0.5)
	engine.set_track_muted("iya", False)

	assert accent.stage.effective_gain() == 0.5


def test_accent_stages_disconnected_with_track (engine: gridloop.engine.Engine) -> None:

	"""Removing a track silences its accent stages too."""

	engine.add_track("iya")
	engine.add_placement("iya", 0, gridloop.placement.Combined("open", "slap", 1.5))
	engine.add_placement("iya", 3, gridloop.placement.Combined("open", "slap", 1.5))

	stages = list(engine.tracks.get("iya").accent_stages.values())
	assert len(stages) == 1

	engine.remove_track("iya")

	assert stages[0].effective_gain() == 0.0


def test_placements_beyond_measure_do_not_play (engine: gridloop.engine.Engine, output: FakeOutput, caplog: pytest.LogCaptureFixture) -> None:

	"""A cell left over from a longer measure is kept but never dispatched."""

	engine.add_track("kick")
	engine.add_placement("kick", 14, gridloop.placement.Single("k"))
	engine.set_time_signature(3, 4)

	with caplog.at_level(logging.WARNING):
		engine.play()

	for _ in range(24):
		output.advance(0.125)
		engine.schedule_ahead()

	assert output.voices == []
	assert 14 in engine.get_track("kick").cells
	assert "will not play" in caplog.text


def test_stop_cancels_in_flight_voices (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Stopping cancels every voice that has not finished."""

	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))
	engine.add_placement("kick", 1, gridloop.placement.Single("k"))

	engine.play()
	output.advance(0.05)
	engine.schedule_ahead()

	assert engine.in_flight == 2

	output.voices[0].finish()

	assert engine.in_flight == 1

	engine.stop()

	assert engine.in_flight == 0
	assert not output.voices[0].cancelled
	assert output.voices[1].cancelled


def test_pause_cancels_in_flight_voices (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Pausing silences everything that is sounding."""

	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))

	engine.play()
	engine.pause()

	assert output.voices[0].cancelled
	assert engine.in_flight == 0


def test_pause_and_resume_keep_the_grid_position (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""A column dispatched ahead of a pause is replayed at its shifted time on resume."""

	engine.add_track("kick")
	engine.add_placement("kick", 1, gridloop.placement.Single("k"))

	engine.play()
	output.advance(0.05)
	engine.schedule_ahead()

	early = output.voices[0]
	assert early.start_time == 10.125

	engine.pause()

	status = engine.get_status()
	assert early.cancelled
	assert status.column == 0
	assert status.elapsed == pytest.approx(0.05)

	output.advance(5.0)
	engine.schedule_ahead()

	assert len(output.voices) == 1

	event_log.clear()
	engine.play()

	assert event_log.named("grid_cell_changed") == [(1, pytest.approx(15.125))]
	assert output.voices[1].start_time == pytest.approx(15.125)


def test_pause_before_any_column_is_due (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""Pausing at the instant of play rewinds to before column 0."""

	engine.play()
	engine.pause()

	assert engine.get_status().column == -1

	output.advance(1.0)
	event_log.clear()
	engine.play()

	assert event_log.named("grid_cell_changed") == [(0, pytest.approx(11.0))]


def test_listener_stop_prevents_dispatch (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""Stopping from inside a grid_cell_changed listener dispatches nothing for that column."""

	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))

	def on_cell (column: int, when: float) -> None:
		if column == 0:
			engine.stop()

	engine.on_event("grid_cell_changed", on_cell)
	engine.play()

	assert output.voices == []
	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED


def test_schedule_ahead_idle_when_stopped (engine: gridloop.engine.Engine, event_log: EventLog) -> None:

	"""Calling schedule_ahead while stopped does nothing."""

	engine.schedule_ahead()

	assert event_log.events == []


def test_play_restarts_from_the_top_after_stop (engine: gridloop.engine.Engine, output: FakeOutput, event_log: EventLog) -> None:

	"""Stop then play begins again at column 0 at the new clock time."""

	engine.play()

	for _ in range(5):
		output.advance(0.125)
		engine.schedule_ahead()

	engine.stop()
	output.advance(1.0)
	event_log.clear()
	engine.play()

	assert event_log.named("grid_cell_changed") == [(0, output.now)]


@pytest.mark.asyncio
async def test_start_and_shutdown (engine: gridloop.engine.Engine, output: FakeOutput) -> None:

	"""start() opens the output and runs the tick task; shutdown() closes both."""

	await engine.start()

	assert output.started
	assert engine.task is not None

	engine.play()
	await asyncio.sleep(0.01)
	await engine.shutdown()

	assert output.closed
	assert engine.task is None
	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED


@pytest.mark.asyncio
async def test_measure_plays_through_in_real_time () -> None:

	"""With looping off, the tick task plays one measure and the transport stops by itself."""

	output = WallClockOutput()
	engine = gridloop.engine.Engine(
		output,
		bpm = 600,
		time_signature = (2, 4),
		subdivision = 4,
		loop = False,
		lookahead = 0.05,
		tick_interval = 0.01
	)

	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("kick"))
	engine.add_placement("kick", 1, gridloop.placement.Single("kick"))

	await engine.start()
	engine.play()

	await asyncio.wait_for(engine.wait_stopped(), timeout=2.0)

	starts = [v.start_time for v in output.voices]

	assert len(starts) == 2
	assert starts[1] - starts[0] == pytest.approx(0.1)

	await engine.shutdown()


@pytest.mark.asyncio
async def test_scheduler_failure_halts_transport (engine: gridloop.engine.Engine, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:

	"""An unexpected error during a tick is logged and the transport stops."""

	engine.play()

	def broken () -> None:
		raise RuntimeError("output vanished")

	monkeypatch.setattr(engine, "schedule_ahead", broken)

	with caplog.at_level(logging.ERROR):
		await engine.start()
		await asyncio.wait_for(engine.task, timeout=1.0)

	assert engine.get_status().state is gridloop.engine.TransportState.STOPPED
	assert "halting the transport" in caplog.text

	await engine.shutdown()


class RejectingOutput (FakeOutput):

	"""Fake output that refuses every asset."""

	def trigger (self, asset: typing.Any, stage: gridloop.output.GainStage, start_time: float, gain: float, on_ended: typing.Callable) -> FakeVoice:

		"""Fail like an output handed an asset of the wrong kind."""

		raise TypeError(f"Cannot play {asset!r}")


class QuickEndOutput (FakeOutput):

	"""Fake output whose voices end on another thread before trigger() returns."""

	def trigger (self, asset: typing.Any, stage: gridloop.output.GainStage, start_time: float, gain: float, on_ended: typing.Callable) -> FakeVoice:

		"""Finish the voice from a second thread while trigger() is still running."""

		voice = super().trigger(asset, stage, start_time, gain, on_ended)
		self.thread = threading.Thread(target=voice.finish)
		self.thread.start()
		self.thread.join(timeout=0.1)

		return voice


def test_failing_trigger_during_play_stops_cleanly (caplog: pytest.LogCaptureFixture) -> None:

	"""An output error in play()'s first pass is logged and leaves the transport stopped."""

	engine = gridloop.engine.Engine(RejectingOutput(now=10.0))
	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("kick.wav"))

	with caplog.at_level(logging.ERROR):
		engine.play()

	status = engine.get_status()

	assert status.state is gridloop.engine.TransportState.STOPPED
	assert status.column == -1
	assert engine.in_flight == 0
	assert "halting the transport" in caplog.text


def test_voice_ending_inside_trigger_is_not_counted () -> None:

	"""A voice that ends before trigger() returns does not stay in flight."""

	output = QuickEndOutput(now=10.0)
	engine = gridloop.engine.Engine(output)
	engine.add_track("kick")
	engine.add_placement("kick", 0, gridloop.placement.Single("k"))

	engine.play()
	output.thread.join()

	assert output.voices[0].ended
	assert engine.in_flight == 0
