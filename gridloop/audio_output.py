"""Sample playback through the sound card.

``SoundDeviceOutput`` mixes ``SampleBuffer`` voices into a sounddevice output
stream. Its clock is the number of frames the stream has rendered, so a start
time maps to an exact frame and every voice begins on the sample it was
scheduled for, however late the engine's tick ran.
"""

import dataclasses
import logging
import threading
import typing

import numpy
import soundfile

import gridloop.constants
import gridloop.output


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True, eq=False)
class SampleBuffer:

	"""
	A decoded sample, as float32 frames shaped (frames, channels).
	"""

	name: str
	data: numpy.ndarray
	sample_rate: int

	@property
	def duration (self) -> float:

		"""Length of the sample in seconds."""

		return len(self.data) / float(self.sample_rate)


def load_sample (
	path: str,
	sample_rate: int = gridloop.constants.DEFAULT_SAMPLE_RATE,
	channels: int = 2
) -> typing.Optional[SampleBuffer]:

	"""
	Decode an audio file into a ``SampleBuffer`` matching the output format.

	Mono files are copied to every channel. Files that cannot be read, or
	whose sample rate differs from *sample_rate*, are logged and give None:
	a placement built from None is refused by the engine, leaving the cell
	silent.
	"""

	try:
		data, file_rate = soundfile.read(path, dtype="float32", always_2d=True)
	except (RuntimeError, OSError) as e:
		logger.error(f"Failed to decode {path}: {e}")
		return None

	if file_rate != sample_rate:
		logger.error(f"{path} is {file_rate} Hz but the output runs at {sample_rate} Hz")
		return None

	if data.shape[1] == 1 and channels > 1:
		data = numpy.repeat(data, channels, axis=1)

	elif data.shape[1] != channels:
		logger.error(f"{path} has {data.shape[1]} channels, expected {channels}")
		return None

	logger.info(f"Loaded {path} ({len(data) / sample_rate:.3f}s)")

	return SampleBuffer(name=path, data=numpy.ascontiguousarray(data), sample_rate=sample_rate)


class SampleVoice:

	"""
	One scheduled playback of a ``SampleBuffer``.
	"""

	def __init__ (
		self,
		output: "SoundDeviceOutput",
		sample: SampleBuffer,
		stage: gridloop.output.GainStage,
		start_frame: int,
		gain: float,
		on_ended: typing.Callable[[gridloop.output.Voice], None]
	) -> None:

		self.output = output
		self.sample = sample
		self.stage = stage
		self.start_frame = start_frame
		self.gain = gain
		self.on_ended = on_ended
		self.position = 0
		self.finished = False


	def cancel (self) -> None:

		"""Stop the voice now; does nothing once it has finished."""

		self.output._cancel(self)


class SoundDeviceOutput:

	"""
	An ``AudioOutput`` that plays sample buffers on a sounddevice stream.

	Parameters:
		device: sounddevice output device name or index (None = default).
		sample_rate: Stream sample rate; samples must match it.
		channels: Number of output channels.
		block_size: Frames per stream callback. Smaller is lower latency.
	"""

	def __init__ (
		self,
		device: typing.Optional[typing.Union[str, int]] = None,
		sample_rate: int = gridloop.constants.DEFAULT_SAMPLE_RATE,
		channels: int = 2,
		block_size: int = gridloop.constants.DEFAULT_BLOCK_SIZE
	) -> None:

		self.device = device
		self.sample_rate = sample_rate
		self.channels = channels
		self.block_size = block_size

		self.stream: typing.Any = None
		self._frames_rendered = 0
		self._voices: typing.List[SampleVoice] = []
		self._lock = threading.Lock()


	def current_time (self) -> float:

		"""Seconds of audio rendered since the stream started."""

		with self._lock:
			return self._frames_rendered / float(self.sample_rate)


	def create_gain_stage (self, parent: typing.Optional[gridloop.output.GainStage] = None) -> gridloop.output.GainStage:

		return gridloop.output.GainStage(parent)


	def trigger (
		self,
		asset: typing.Any,
		stage: gridloop.output.GainStage,
		start_time: float,
		gain: float,
		on_ended: typing.Callable[[gridloop.output.Voice], None]
	) -> SampleVoice:

		"""
		Schedule a sample to start at *start_time*. Late voices start at once.
		"""

		if not isinstance(asset, SampleBuffer):
			raise TypeError(f"SoundDeviceOutput plays SampleBuffer assets, got {asset!r}")

		voice = SampleVoice(
			output = self,
			sample = asset,
			stage = stage,
			start_frame = int(round(start_time * self.sample_rate)),
			gain = gain,
			on_ended = on_ended
		)

		with self._lock:
			self._voices.append(voice)

		return voice


	def _cancel (self, voice: SampleVoice) -> None:

		with self._lock:
			if voice.finished:
				return
			voice.finished = True
			self._voices.remove(voice)

		voice.on_ended(voice)


	def render (self, frames: int) -> numpy.ndarray:

		"""
		Mix the next *frames* frames and advance the clock.

		Each voice is scaled by its own gain times its stage chain, read at
		render time and capped at 1.0, then the mix is hard-clipped to [-1, 1].
		"""

		out = numpy.zeros((frames, self.channels), dtype=numpy.float32)
		ended: typing.List[SampleVoice] = []

		with self._lock:

			block_start = self._frames_rendered

			for voice in list(self._voices):

				offset = voice.start_frame - block_start

				if offset >= frames:
					continue

				begin = max(0, offset)
				count = min(frames - begin, len(voice.sample.data) - voice.position)
				level = gridloop.output.clamp_gain(voice.gain * voice.stage.effective_gain())

				if count > 0 and level > 0:
					out[begin:begin + count] += voice.sample.data[voice.position:voice.position + count] * level

				voice.position += max(0, count)

				if voice.position >= len(voice.sample.data):
					voice.finished = True
					self._voices.remove(voice)
					ended.append(voice)

			self._frames_rendered += frames

		for voice in ended:
			voice.on_ended(voice)

		numpy.clip(out, -1.0, 1.0, out=out)

		return out


	def _callback (self, outdata: numpy.ndarray, frames: int, time_info: typing.Any, status: typing.Any) -> None:

		"""sounddevice stream callback; runs on the audio thread."""

		if status:
			logger.warning(f"Audio stream status: {status}")

		outdata[:] = self.render(frames)


	def start (self) -> None:

		"""
		Open and start the output stream.
		"""

		if self.stream is not None:
			return

		# Imported here: loading sounddevice needs the PortAudio library,
		# which offline uses of this module (rendering, tests) do not.
		import sounddevice

		self.stream = sounddevice.OutputStream(
			samplerate = self.sample_rate,
			channels = self.channels,
			blocksize = self.block_size,
			dtype = "float32",
			device = self.device,
			callback = self._callback
		)

		self.stream.start()
		logger.info(f"Audio output started at {self.sample_rate} Hz, {self.block_size}-frame blocks")


	def close (self) -> None:

		"""
		Drop every voice and close the stream.
		"""

		with self._lock:
			voices = list(self._voices)
			self._voices.clear()
			for voice in voices:
				voice.finished = True

		for voice in voices:
			voice.on_ended(voice)

		if self.stream is not None:

			try:
				self.stream.stop()
				self.stream.close()
			except Exception:
				logger.exception("Failed to close audio stream")

			self.stream = None
			logger.info("Audio output closed")
