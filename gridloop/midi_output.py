"""Drum hits on a MIDI port.

MIDI ports send messages the moment they are written, so ``MidiOutput``
emulates "start at time T" with a dispatch thread that sleeps until each
voice's start time and then sends the note. Gain stages become velocity,
read when the note is sent.
"""

import dataclasses
import heapq
import itertools
import logging
import threading
import time
import typing

import mido

import gridloop.constants
import gridloop.midi_utils
import gridloop.output


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class MidiNote:

	"""
	A MIDI note used as a sound asset (for example a GM drum note).
	"""

	note: int
	channel: int = gridloop.constants.MIDI_DRUM_CHANNEL

	def __post_init__ (self) -> None:

		if not 0 <= self.note <= 127:
			raise ValueError(f"MIDI note must be 0-127, got {self.note}")

		if not 0 <= self.channel <= 15:
			raise ValueError(f"MIDI channel must be 0-15, got {self.channel}")


class MidiVoice:

	"""
	One scheduled note: note-on at ``start_time``, note-off one note length later.
	"""

	def __init__ (
		self,
		output: "MidiOutput",
		asset: MidiNote,
		stage: gridloop.output.GainStage,
		start_time: float,
		gain: float,
		on_ended: typing.Callable[[gridloop.output.Voice], None]
	) -> None:

		self.output = output
		self.asset = asset
		self.stage = stage
		self.start_time = start_time
		self.gain = gain
		self.on_ended = on_ended
		self.sounding = False
		self.finished = False


	def cancel (self) -> None:

		"""Stop the note now; does nothing once it has finished."""

		self.output._cancel(self)


class MidiOutput:

	"""
	An ``AudioOutput`` that plays ``MidiNote`` assets on a MIDI port.

	Parameters:
		device_name: MIDI output port name. When omitted, the first
			available port is used.
		note_seconds: Time between a note's note-on and note-off.
	"""

	def __init__ (
		self,
		device_name: typing.Optional[str] = None,
		note_seconds: float = gridloop.constants.MIDI_NOTE_SECONDS
	) -> None:

		self.device_name = device_name
		self.note_seconds = note_seconds
		self.midi_out: typing.Any = None

		self._epoch = time.perf_counter()
		self._queue: typing.List[typing.Tuple[float, int, str, MidiVoice]] = []
		self._counter = itertools.count()
		self._condition = threading.Condition()
		self._thread: typing.Optional[threading.Thread] = None
		self._running = False


	def current_time (self) -> float:

		"""Seconds since this output was created, from ``time.perf_counter``."""

		return time.perf_counter() - self._epoch


	def create_gain_stage (self, parent: typing.Optional[gridloop.output.GainStage] = None) -> gridloop.output.GainStage:

		return gridloop.output.GainStage(parent)


	def trigger (
		self,
		asset: typing.Any,
		stage: gridloop.output.GainStage,
		start_time: float,
		gain: float,
		on_ended: typing.Callable[[gridloop.output.Voice], None]
	) -> MidiVoice:

		"""
		Queue a note to be sent at *start_time*. Late notes are sent at once.
		"""

		if not isinstance(asset, MidiNote):
			raise TypeError(f"MidiOutput plays MidiNote assets, got {asset!r}")

		voice = MidiVoice(self, asset, stage, start_time, gain, on_ended)

		with self._condition:
			heapq.heappush(self._queue, (start_time, next(self._counter), "note_on", voice))
			self._condition.notify()

		return voice


	def _send (self, message: mido.Message) -> None:

		if self.midi_out is None:
			return

		try:
			self.midi_out.send(message)
		except Exception:
			logger.exception("MIDI send failed (device may be disconnected)")


	def _note_off (self, voice: MidiVoice) -> None:

		self._send(mido.Message("note_off", channel=voice.asset.channel, note=voice.asset.note, velocity=0))


	def dispatch_due (self, now: float) -> float:

		"""
		Send every queued message due at or before *now*.

		Returns the time of the next queued message, or infinity when the
		queue is empty. The dispatch thread calls this in a loop.
		"""

		due: typing.List[typing.Tuple[str, MidiVoice]] = []

		with self._condition:

			while self._queue and self._queue[0][0] <= now:

				when, _, kind, voice = heapq.heappop(self._queue)

				if voice.finished:
					continue

				if kind == "note_on":
					voice.sounding = True
					heapq.heappush(self._queue, (when + self.note_seconds, next(self._counter), "note_off", voice))

				else:
					voice.sounding = False
					voice.finished = True

				due.append((kind, voice))

			next_time = self._queue[0][0] if self._queue else float("inf")

		for kind, voice in due:

			if kind == "note_on":
				velocity = gridloop.midi_utils.gain_to_velocity(
					gridloop.output.clamp_gain(voice.gain * voice.stage.effective_gain())
				)
				if velocity > 0:
					self._send(mido.Message("note_on", channel=voice.asset.channel, note=voice.asset.note, velocity=velocity))

			else:
				self._note_off(voice)
				voice.on_ended(voice)

		return next_time


	def _cancel (self, voice: MidiVoice) -> None:

		with self._condition:
			if voice.finished:
				return
			voice.finished = True
			was_sounding = voice.sounding
			voice.sounding = False

		if was_sounding:
			self._note_off(voice)

		voice.on_ended(voice)


	def _run (self) -> None:

		"""Dispatch thread: sleep until the next message is due, then send it."""

		while True:

			next_time = self.dispatch_due(self.current_time())

			with self._condition:

				if not self._running:
					return

				wait = next_time - self.current_time()

				if self._queue and self._queue[0][0] < next_time:
					continue

				if wait > 0:
					self._condition.wait(timeout=None if wait == float("inf") else wait)


	def start (self) -> None:

		"""
		Open the MIDI port and start the dispatch thread.
		"""

		if self._thread is not None:
			return

		if self.midi_out is None:
			device_name, midi_out = gridloop.midi_utils.select_output_device(self.device_name)

			if device_name:
				self.device_name = device_name
				self.midi_out = midi_out

		self._running = True
		self._thread = threading.Thread(target=self._run, name="gridloop-midi", daemon=True)
		self._thread.start()


	def close (self) -> None:

		"""
		Stop the dispatch thread, silence sounding notes and close the port.
		"""

		with self._condition:
			self._running = False
			pending = [entry[3] for entry in self._queue]
			self._queue = []
			self._condition.notify()

		if self._thread is not None:
			self._thread.join()
			self._thread = None

		for voice in dict.fromkeys(pending):
			self._cancel(voice)

		if self.midi_out is not None:
			try:
				self.midi_out.close()
			except Exception:
				logger.exception("Failed to close MIDI output")
			self.midi_out = None
			logger.info("MIDI output closed")
