"""The audio output boundary.

The engine never produces sound itself. It asks an ``AudioOutput`` for the
current clock time, for gain stages, and to start assets at exact times.
``gridloop.audio_output.SoundDeviceOutput`` plays sample buffers through the
sound card and ``gridloop.midi_output.MidiOutput`` plays notes on a MIDI port.
"""

import math
import typing

import gridloop.constants


def clamp_gain (value: float) -> float:

	"""
	Clamp a gain into [0.0, 1.0]. NaN is treated as silence.
	"""

	if math.isnan(value):
		return gridloop.constants.MIN_GAIN

	return max(gridloop.constants.MIN_GAIN, min(gridloop.constants.MAX_GAIN, float(value)))


class GainStage:

	"""
	A linear gain applied in series with its parent stage.

	Stages form a tree: the master stage has no parent and every track stage
	feeds the master. Outputs read ``effective_gain()`` when they render or
	send a voice, so gain changes take effect immediately, even for voices
	that are already sounding.
	"""

	def __init__ (self, parent: typing.Optional["GainStage"] = None) -> None:

		self.parent = parent
		self.connected = True
		self._gain = gridloop.constants.MAX_GAIN


	@property
	def gain (self) -> float:

		"""Return this stage's own gain."""

		return self._gain


	def set_gain (self, value: float) -> None:

		"""Set this stage's gain, clamped to [0.0, 1.0]."""

		self._gain = clamp_gain(value)


	def disconnect (self) -> None:

		"""Detach the stage; anything routed through it becomes silent."""

		self.connected = False


	def effective_gain (self) -> float:

		"""Return the product of this stage and every stage above it."""

		gain = 1.0
		stage: typing.Optional[GainStage] = self

		while stage is not None:

			if not stage.connected:
				return 0.0

			gain *= stage.gain
			stage = stage.parent

		return gain


@typing.runtime_checkable
class Voice (typing.Protocol):

	"""
	A cancellable handle to one triggered asset.
	"""

	def cancel (self) -> None:

		"""
		Stop the voice now. Cancelling a finished voice does nothing.
		"""

		...


@typing.runtime_checkable
class AudioOutput (typing.Protocol):

	"""
	Protocol for anything the engine can schedule sounds on.

	``trigger`` must not block and must not call ``on_ended`` before it
	returns. ``on_ended`` may be called from another thread, exactly once per
	voice, when playback finishes or the voice is cancelled.
	"""

	def current_time (self) -> float:

		"""
		Return the monotonic clock time, in seconds, that start times refer to.
		"""

		...


	def create_gain_stage (self, parent: typing.Optional[GainStage] = None) -> GainStage:

		"""
		Create a gain stage, feeding *parent* when given.
		"""

		...


	def trigger (
		self,
		asset: typing.Any,
		stage: GainStage,
		start_time: float,
		gain: float,
		on_ended: typing.Callable[[Voice], None]
	) -> Voice:

		"""
		Schedule *asset* to start at *start_time* through *stage*.
		"""

		...


	def start (self) -> None:

		"""
		Open the device and start the clock.
		"""

		...


	def close (self) -> None:

		"""
		Silence everything and release the device.
		"""

		...
