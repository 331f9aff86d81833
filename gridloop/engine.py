import asyncio
import dataclasses
import enum
import logging
import math
import threading
import typing

import gridloop.constants
import gridloop.event_emitter
import gridloop.output
import gridloop.placement
import gridloop.timing
import gridloop.tracks


logger = logging.getLogger(__name__)


EVENT_NAMES = (
	"play",
	"pause",
	"stop",
	"grid_cell_changed",
	"bpm_changed",
	"time_signature_changed",
	"subdivision_changed",
	"looping_changed",
	"track_volume_changed",
	"track_mute_changed",
	"master_volume_changed",
	"track_added",
	"track_removed",
	"audio_added_to_grid",
	"audio_removed_from_grid",
)


class TransportState (enum.Enum):

	"""The three mutually exclusive transport states."""

	STOPPED = "stopped"
	PLAYING = "playing"
	PAUSED = "paused"


@dataclasses.dataclass (frozen=True)
class TransportStatus:

	"""
	A snapshot of the transport, as returned by ``Engine.get_status()``.

	Attributes:
		state: The current transport state.
		column: The column most recently dispatched (-1 when stopped or
			before the first column).
		next_deadline: Clock time at which the next column is due.
		elapsed: Seconds of musical time since playback started (0 when stopped).
	"""

	state: TransportState
	column: int
	next_deadline: float
	elapsed: float

	@property
	def is_playing (self) -> bool:
		return self.state is TransportState.PLAYING

	@property
	def is_paused (self) -> bool:
		return self.state is TransportState.PAUSED


class Engine:

	"""
	The grid sequencer: transport state machine plus look-ahead scheduler.

	The engine owns the track registry, the transport configuration and a
	periodic asyncio task that dispatches sound triggers slightly ahead of
	their deadlines. Triggers are handed to the audio output with their exact
	start time, so coarse or jittery ticks never shift the audible timing.

	Public operations never raise for misuse. Changing tempo, meter,
	subdivision, tracks or placements outside the stopped state, unknown
	track ids and invalid values are logged and ignored; gains are clamped.

	Example:
		```python
		engine = gridloop.Engine(output, bpm=96)
		engine.add_track("kick")
		engine.add_placement("kick", 0, gridloop.Single(kick_sample))

		await engine.start()
		engine.play()
		```
	"""

	def __init__ (
		self,
		output: gridloop.output.AudioOutput,
		bpm: float = gridloop.constants.DEFAULT_BPM,
		time_signature: typing.Tuple[int, int] = (gridloop.constants.DEFAULT_NUMERATOR, gridloop.constants.DEFAULT_DENOMINATOR),
		subdivision: int = gridloop.constants.DEFAULT_SUBDIVISION,
		loop: bool = True,
		lookahead: float = gridloop.constants.LOOKAHEAD_SECONDS,
		tick_interval: float = gridloop.constants.TICK_INTERVAL_SECONDS
	) -> None:

		"""Initialize a stopped engine.

		Parameters:
			output: The audio output that provides the clock, gain stages
				and the trigger primitive.
			bpm: Tempo in quarter notes per minute.
			time_signature: (numerator, denominator) of the measure.
			subdivision: Note value of one grid cell (4, 8, 16 or 32).
			loop: Wrap to column 0 at the end of the measure instead of stopping.
			lookahead: How far ahead of the clock triggers are dispatched.
			tick_interval: How often the scheduler wakes while playing.

		Raises ``ValueError`` for an unusable initial configuration.
		"""

		numerator, denominator = time_signature

		gridloop.timing.validate_bpm(bpm)
		gridloop.timing.columns_per_measure(numerator, denominator, subdivision)

		if tick_interval <= 0 or lookahead <= 0:
			raise ValueError("Lookahead and tick interval must be positive")

		if lookahead <= tick_interval:
			logger.warning(
				f"Lookahead ({lookahead}s) does not exceed the tick interval ({tick_interval}s); "
				f"late ticks will produce audible gaps"
			)

		self.output = output
		self.lookahead = lookahead
		self.tick_interval = tick_interval

		self._bpm = float(bpm)
		self._numerator = numerator
		self._denominator = denominator
		self._subdivision = subdivision
		self._loop = bool(loop)

		self.events = gridloop.event_emitter.EventEmitter(EVENT_NAMES)
		self.tracks = gridloop.tracks.TrackRegistry()

		self._master_volume = gridloop.constants.MAX_GAIN
		self._master = output.create_gain_stage()
		self._master.set_gain(self._master_volume)

		# Transport position. The next deadline is always
		# origin + cells_elapsed * cell_seconds.
		self.state = TransportState.STOPPED
		self._column = -1
		self._origin = 0.0
		self._cells_elapsed = 0
		self._resume_offset = 0.0

		# Voices are added by the tick and removed by output callbacks,
		# which may run on the output's own thread.
		self._voices: typing.Set[gridloop.output.Voice] = set()
		self._voice_lock = threading.Lock()

		self.task: typing.Optional[asyncio.Task] = None
		self._stopped = asyncio.Event()
		self._stopped.set()


	# Configuration accessors

	@property
	def bpm (self) -> float:
		return self._bpm

	@property
	def time_signature (self) -> typing.Tuple[int, int]:
		return self._numerator, self._denominator

	@property
	def subdivision (self) -> int:
		return self._subdivision

	@property
	def looping (self) -> bool:
		return self._loop

	@property
	def master_volume (self) -> float:
		return self._master_volume

	@property
	def cell_seconds (self) -> float:

		"""Duration of one grid cell at the current tempo and subdivision."""

		return gridloop.timing.cell_seconds(self._bpm, self._subdivision)

	@property
	def columns_per_measure (self) -> int:

		"""Number of grid columns in one measure."""

		return gridloop.timing.columns_per_measure(self._numerator, self._denominator, self._subdivision)

	@property
	def cells_per_beat (self) -> int:

		"""Number of cells in one felt beat (for beat markers)."""

		return gridloop.timing.cells_per_beat(self._numerator, self._denominator, self._subdivision)

	@property
	def in_flight (self) -> int:

		"""Number of voices triggered and not yet finished."""

		with self._voice_lock:
			return len(self._voices)


	def get_status (self) -> TransportStatus:

		"""
		Return the current transport state and position.
		"""

		elapsed = 0.0

		if self.state is TransportState.PLAYING:
			elapsed = max(0.0, self.output.current_time() - self._origin)

		elif self.state is TransportState.PAUSED:
			elapsed = max(0.0, self._cells_elapsed * self.cell_seconds - self._resume_offset)

		return TransportStatus(
			state = self.state,
			column = self._column,
			next_deadline = self._next_deadline(),
			elapsed = elapsed
		)


	def get_tracks (self) -> typing.Dict[str, gridloop.tracks.TrackSnapshot]:

		"""
		Return read-only snapshots of every track, in insertion order.
		"""

		return {track.track_id: track.snapshot() for track in self.tracks}


	def get_track (self, track_id: str) -> typing.Optional[gridloop.tracks.TrackSnapshot]:

		"""
		Return a read-only snapshot of one track, or None if it does not exist.
		"""

		track = self.tracks.get(track_id)

		return track.snapshot() if track is not None else None


	def on_event (self, event_name: str, callback: typing.Callable[..., typing.Any]) -> None:

		"""
		Register a callback for a named event (see ``EVENT_NAMES``).
		"""

		self.events.on(event_name, callback)


	def off_event (self, event_name: str, callback: typing.Callable[..., typing.Any]) -> None:

		"""
		Unregister a callback previously passed to ``on_event``.
		"""

		self.events.off(event_name, callback)


	# Guards

	def _require_stopped (self, action: str) -> bool:

		if self.state is not TransportState.STOPPED:
			logger.warning(f"Cannot {action} while {self.state.value} - stop the transport first")
			return False

		return True


	def _require_track (self, track_id: str) -> typing.Optional[gridloop.tracks.Track]:

		track = self.tracks.get(track_id)

		if track is None:
			logger.warning(f"Track {track_id!r} does not exist")

		return track


	def _checked_gain (self, value: typing.Any, label: str) -> typing.Optional[float]:

		if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
			logger.error(f"{label} must be a number, got {value!r}")
			return None

		clamped = gridloop.output.clamp_gain(value)

		if clamped != value:
			logger.warning(f"{label} {value} is outside 0.0-1.0, clamped to {clamped}")

		return clamped


	# Tempo, meter and looping

	def set_bpm (self, bpm: float) -> None:

		"""
		Change the tempo. Only allowed while stopped.
		"""

		if not self._require_stopped("change BPM"):
			return

		try:
			bpm = gridloop.timing.validate_bpm(bpm)
		except gridloop.timing.MeterError as e:
			logger.error(f"BPM rejected: {e}")
			return

		self._bpm = bpm
		logger.info(f"BPM set to {self._bpm:.2f}")

		self.events.emit("bpm_changed", self._bpm)


	def set_time_signature (self, numerator: int, denominator: int) -> None:

		"""
		Change the time signature. Only allowed while stopped, and only when
		the current subdivision divides the new denominator evenly.
		"""

		if not self._require_stopped("change time signature"):
			return

		try:
			gridloop.timing.columns_per_measure(numerator, denominator, self._subdivision)
		except gridloop.timing.MeterError as e:
			logger.error(f"Time signature rejected: {e}")
			return

		self._numerator = numerator
		self._denominator = denominator
		logger.info(f"Time signature set to {numerator}/{denominator}")

		self.events.emit("time_signature_changed", numerator, denominator)


	def set_subdivision (self, subdivision: int) -> None:

		"""
		Change the note value of one cell. Only allowed while stopped.
		"""

		if not self._require_stopped("change subdivision"):
			return

		try:
			gridloop.timing.columns_per_measure(self._numerator, self._denominator, subdivision)
		except gridloop.timing.MeterError as e:
			logger.error(f"Subdivision rejected: {e}")
			return

		self._subdivision = subdivision
		logger.info(f"Subdivision set to 1/{subdivision}")

		self.events.emit("subdivision_changed", subdivision)


	def configure_grid (self, numerator: int, denominator: int, subdivision: int) -> None:

		"""
		Change time signature and subdivision together, validated as a whole.

		Moving from 4/4 in quarters to 6/8 in eighths cannot be done one
		setter at a time in either order; this applies both or neither.
		"""

		if not self._require_stopped("change grid settings"):
			return

		try:
			gridloop.timing.columns_per_measure(numerator, denominator, subdivision)
		except gridloop.timing.MeterError as e:
			logger.error(f"Grid settings rejected: {e}")
			return

		self._numerator = numerator
		self._denominator = denominator
		self._subdivision = subdivision
		logger.info(f"Grid set to {numerator}/{denominator} in 1/{subdivision} cells")

		self.events.emit("time_signature_changed", numerator, denominator)
		self.events.emit("subdivision_changed", subdivision)


	def set_looping (self, loop: bool) -> None:

		"""
		Enable or disable looping. Allowed in any state; voices already
		dispatched are never cancelled by this.
		"""

		self._loop = bool(loop)
		self.events.emit("looping_changed", self._loop)


	# Tracks and placements

	def add_track (self, track_id: str) -> None:

		"""
		Add an empty track at full volume. Only allowed while stopped.
		"""

		if not self._require_stopped("add a track"):
			return

		if track_id in self.tracks:
			logger.warning(f"Track {track_id!r} already exists")
			return

		stage = self.output.create_gain_stage(self._master)
		track = gridloop.tracks.Track(track_id=track_id, stage=stage)
		stage.set_gain(track.live_gain)
		self.tracks.add(track)

		logger.info(f"Track {track_id!r} added")
		self.events.emit("track_added", track_id)


	def remove_track (self, track_id: str) -> None:

		"""
		Remove a track and all its placements. Only allowed while stopped.
		"""

		if not self._require_stopped("remove a track"):
			return

		if self._require_track(track_id) is None:
			return

		track = self.tracks.remove(track_id)
		track.stage.disconnect()

		for stage in track.accent_stages.values():
			stage.disconnect()

		track.cells.clear()

		logger.info(f"Track {track_id!r} removed")
		self.events.emit("track_removed", track_id)


	def add_placement (self, track_id: str, column: int, placement: gridloop.placement.Placement) -> None:

		"""
		Put a sound on a cell, replacing whatever was there. Only allowed while stopped.
		"""

		if not self._require_stopped("add audio to the grid"):
			return

		track = self._require_track(track_id)

		if track is None:
			return

		if isinstance(column, bool) or not isinstance(column, int) or column < 0:
			logger.error(f"Column index must be a non-negative integer, got {column!r}")
			return

		if not isinstance(placement, (gridloop.placement.Single, gridloop.placement.Combined)):
			logger.error(f"Not a placement: {placement!r}")
			return

		if any(asset is None for asset in gridloop.placement.assets(placement)):
			logger.warning(f"No audio available for {track_id!r} column {column} - cell left silent")
			return

		if column >= self.columns_per_measure:
			logger.warning(f"Column {column} is beyond the current measure of {self.columns_per_measure} columns")

		if isinstance(placement, gridloop.placement.Combined) and placement.accent_multiplier not in track.accent_stages:
			track.add_accent_stage(placement.accent_multiplier, self.output.create_gain_stage(self._master))

		if column in track.cells:
			del track.cells[column]
			self.events.emit("audio_removed_from_grid", track_id, column)

		track.cells[column] = placement
		self.events.emit("audio_added_to_grid", track_id, column)


	def remove_placement (self, track_id: str, column: int) -> None:

		"""
		Clear one cell. Only allowed while stopped.
		"""

		if not self._require_stopped("remove audio from the grid"):
			return

		track = self._require_track(track_id)

		if track is None or column not in track.cells:
			return

		del track.cells[column]
		self.events.emit("audio_removed_from_grid", track_id, column)


	def clear_grid (self) -> None:

		"""
		Remove every placement from every track. Only allowed while stopped.
		"""

		if not self._require_stopped("clear the grid"):
			return

		for track in self.tracks:
			for column in sorted(track.cells):
				del track.cells[column]
				self.events.emit("audio_removed_from_grid", track.track_id, column)

		logger.info("Grid cleared")


	# Gain and mute (allowed in every state)

	def set_track_volume (self, track_id: str, volume: float) -> None:

		"""
		Set a track's level, applied at once unless the track is muted.
		"""

		track = self._require_track(track_id)

		if track is None:
			return

		clamped = self._checked_gain(volume, f"Track {track_id!r} volume")

		if clamped is None:
			return

		track.apply_volume(clamped)
		self.events.emit("track_volume_changed", track_id, track.volume)


	def set_track_muted (self, track_id: str, muted: bool) -> None:

		"""
		Mute or unmute a track. Unmuting restores the last volume set.
		"""

		track = self._require_track(track_id)

		if track is None:
			return

		track.apply_mute(bool(muted))
		self.events.emit("track_mute_changed", track_id, track.muted)


	def set_master_volume (self, volume: float) -> None:

		"""
		Set the master level that every track passes through.
		"""

		clamped = self._checked_gain(volume, "Master volume")

		if clamped is None:
			return

		self._master_volume = clamped
		self._master.set_gain(clamped)
		self.events.emit("master_volume_changed", clamped)


	# Transport

	def _next_deadline (self) -> float:

		return self._origin + self._cells_elapsed * self.cell_seconds


	def play (self) -> None:

		"""
		Start from the top when stopped, or resume when paused.

		Column 0 (or the resume column) is dispatched straight away rather
		than waiting for the next tick.
		"""

		if self.state is TransportState.PLAYING:
			return

		now = self.output.current_time()

		if self.state is TransportState.STOPPED:
			self._column = -1
			self._cells_elapsed = 0
			self._origin = now

			span = self.tracks.column_span()
			if span > self.columns_per_measure:
				logger.warning(f"Placements beyond column {self.columns_per_measure - 1} will not play")

		else:
			self._origin = now + self._resume_offset - self._cells_elapsed * self.cell_seconds

		self._resume_offset = 0.0
		self.state = TransportState.PLAYING
		self._stopped.clear()

		logger.info(f"Playing at {self._bpm:.2f} BPM from column {self._column + 1}")
		self.events.emit("play")

		self._schedule_or_halt()


	def pause (self) -> None:

		"""
		Pause, silencing every in-flight voice and keeping the position.

		Columns dispatched ahead of the clock but not yet due are rewound,
		so resuming plays them instead of skipping them.
		"""

		if self.state is not TransportState.PLAYING:
			return

		now = self.output.current_time()
		cell = self.cell_seconds
		columns = self.columns_per_measure

		self._cancel_voices()

		while self._cells_elapsed > 0 and self._origin + (self._cells_elapsed - 1) * cell >= now:
			self._cells_elapsed -= 1
			self._column = (self._column - 1) % columns if self._cells_elapsed > 0 else -1

		self._resume_offset = max(0.0, self._next_deadline() - now)
		self.state = TransportState.PAUSED

		logger.info(f"Paused after column {self._column}")
		self.events.emit("pause")


	def stop (self) -> None:

		"""
		Stop, silence every in-flight voice and return to the top.
		"""

		if self.state is TransportState.STOPPED:
			return

		self._cancel_voices()

		self.state = TransportState.STOPPED
		self._column = -1
		self._cells_elapsed = 0
		self._resume_offset = 0.0
		self._stopped.set()

		logger.info("Stopped")
		self.events.emit("stop")
		self.events.emit("grid_cell_changed", -1, self.output.current_time())


	async def wait_stopped (self) -> None:

		"""
		Wait until the transport is (or next becomes) stopped.
		"""

		await self._stopped.wait()


	# Scheduling

	def schedule_ahead (self) -> None:

		"""
		Dispatch every column whose deadline falls inside the look-ahead window.

		Called by the tick task; safe to call at any time, it does nothing
		unless the transport is playing.
		"""

		if self.state is not TransportState.PLAYING:
			return

		now = self.output.current_time()
		horizon = now + self.lookahead
		cell = self.cell_seconds
		columns = self.columns_per_measure

		while self.state is TransportState.PLAYING:

			deadline = self._origin + self._cells_elapsed * cell

			if deadline >= horizon:
				break

			column = self._column + 1

			if column >= columns:

				if not self._loop:

					# The last column's sounds must start before the transport stops.
					if deadline > now:
						break

					logger.info("End of measure reached with looping off")
					self.stop()
					return

				column = 0

			self._column = column
			self._cells_elapsed += 1

			self.events.emit("grid_cell_changed", column, deadline)

			# A listener may have paused or stopped the transport.
			if self.state is not TransportState.PLAYING:
				return

			self._dispatch(column, deadline)


	def _schedule_or_halt (self) -> bool:

		"""
		Run one scheduling pass. An unexpected error is logged and stops the
		transport; returns False in that case.
		"""

		try:
			self.schedule_ahead()

		except Exception:
			logger.exception("Scheduler pass failed - halting the transport")
			self.stop()
			return False

		return True


	def _dispatch (self, column: int, deadline: float) -> None:

		for track, placement in self.tracks.placements_at(column):

			for trigger in gridloop.placement.triggers(placement):

				if trigger.accent_multiplier is None:
					stage = track.stage
				else:
					stage = track.accent_stages[trigger.accent_multiplier]

				# trigger() runs under the lock: an end reported from the output thread
				# waits until the voice is registered.
				with self._voice_lock:
					voice = self.output.trigger(trigger.asset, stage, deadline, 1.0, self._on_voice_ended)
					self._voices.add(voice)

		logger.debug(f"Column {column} dispatched for {deadline:.4f}")


	def _on_voice_ended (self, voice: gridloop.output.Voice) -> None:

		with self._voice_lock:
			self._voices.discard(voice)


	def _cancel_voices (self) -> None:

		with self._voice_lock:
			voices = list(self._voices)
			self._voices.clear()

		for voice in voices:
			voice.cancel()


	# Lifecycle

	async def start (self) -> None:

		"""
		Start the audio output and the scheduler tick task.
		"""

		if self.task is not None:
			return

		self.output.start()
		self.task = asyncio.create_task(self._run_loop())

		logger.info(f"Engine started (tick {self.tick_interval}s, lookahead {self.lookahead}s)")


	async def _run_loop (self) -> None:

		"""Wake every tick interval and schedule ahead while playing."""

		while True:

			if not self._schedule_or_halt():
				return

			await asyncio.sleep(self.tick_interval)


	async def shutdown (self) -> None:

		"""
		Stop the transport, end the tick task and close the audio output.
		"""

		self.stop()

		if self.task is not None:

			self.task.cancel()

			try:
				await self.task
			except asyncio.CancelledError:
				pass

			self.task = None

		self._cancel_voices()
		self.output.close()

		logger.info("Engine shut down")
