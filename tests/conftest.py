import typing

import mido
import pytest

import gridloop.engine
import gridloop.output


class FakeVoice:

	"""Voice handle recorded by FakeOutput."""

	def __init__ (self, output: "FakeOutput", asset: typing.Any, stage: gridloop.output.GainStage, start_time: float, gain: float, on_ended: typing.Callable) -> None:

		"""Store the trigger arguments for assertions."""

		self.output = output
		self.asset = asset
		self.stage = stage
		self.start_time = start_time
		self.gain = gain
		self.on_ended = on_ended
		self.cancelled = False
		self.ended = False

	def cancel (self) -> None:

		"""Mark the voice cancelled and report it ended."""

		if self.ended:
			return

		self.cancelled = True
		self.finish()

	def finish (self) -> None:

		"""Simulate natural completion."""

		if self.ended:
			return

		self.ended = True
		self.on_ended(self)


class FakeOutput:

	"""Audio output stub with a manually advanced clock."""

	def __init__ (self, now: float = 0.0) -> None:

		"""Start the clock at *now* with no voices."""

		self.now = now
		self.voices: typing.List[FakeVoice] = []
		self.stages: typing.List[gridloop.output.GainStage] = []
		self.started = False
		self.closed = False

	def current_time (self) -> float:

		"""Return the manual clock."""

		return self.now

	def advance (self, seconds: float) -> None:

		"""Move the clock forward."""

		self.now += seconds

	def create_gain_stage (self, parent: typing.Optional[gridloop.output.GainStage] = None) -> gridloop.output.GainStage:

		"""Create and remember a real gain stage."""

		stage = gridloop.output.GainStage(parent)
		self.stages.append(stage)
		return stage

	def trigger (self, asset: typing.Any, stage: gridloop.output.GainStage, start_time: float, gain: float, on_ended: typing.Callable) -> FakeVoice:

		"""Record a trigger without producing sound."""

		voice = FakeVoice(self, asset, stage, start_time, gain, on_ended)
		self.voices.append(voice)
		return voice

	def start (self) -> None:

		"""Record that the output was started."""

		self.started = True

	def close (self) -> None:

		"""Record that the output was closed."""

		self.closed = True


class EventLog:

	"""Subscribes to every engine event and records (name, args) tuples."""

	def __init__ (self, engine: gridloop.engine.Engine) -> None:

		"""Register a recorder for each known event."""

		self.events: typing.List[typing.Tuple[typing.Any, ...]] = []

		for name in gridloop.engine.EVENT_NAMES:
			engine.on_event(name, self._recorder(name))

	def _recorder (self, name: str) -> typing.Callable[..., None]:

		"""Build a callback that records events under *name*."""

		def record (*args: typing.Any) -> None:
			self.events.append((name, *args))

		return record

	def named (self, name: str) -> typing.List[typing.Tuple[typing.Any, ...]]:

		"""Return the payloads of every recorded event called *name*."""

		return [event[1:] for event in self.events if event[0] == name]

	def clear (self) -> None:

		"""Forget recorded events."""

		self.events.clear()


@pytest.fixture
def output () -> FakeOutput:

	"""A fake audio output at clock time 10.0."""

	return FakeOutput(now=10.0)


@pytest.fixture
def engine (output: FakeOutput) -> gridloop.engine.Engine:

	"""A stopped engine on the fake output with default settings."""

	return gridloop.engine.Engine(output)


@pytest.fixture
def event_log (engine: gridloop.engine.Engine) -> EventLog:

	"""Record every event the engine raises."""

	return EventLog(engine)


class FakeMidiOut:

	"""Minimal MIDI output stub that records sent messages."""

	def __init__ (self) -> None:

		"""Start with no messages."""

		self.sent: typing.List[mido.Message] = []
		self.closed = False

	def send (self, message: mido.Message) -> None:

		"""Record an outgoing MIDI message."""

		self.sent.append(message)

	def close (self) -> None:

		"""Record the close."""

		self.closed = True


# Module-level reference so tests can access the most recently opened FakeMidiOut.
_current_fake_output: typing.Optional[FakeMidiOut] = None


def _fake_get_output_names () -> list[str]:

	"""Return a fixed list of MIDI output names for tests."""

	return ["Dummy MIDI"]


def _fake_open_output (name: str) -> FakeMidiOut:

	"""Return a fake MIDI output regardless of the name."""

	global _current_fake_output
	fake = FakeMidiOut()
	_current_fake_output = fake
	return fake


@pytest.fixture
def patch_midi (monkeypatch: pytest.MonkeyPatch) -> None:

	"""Patch mido to use a fake MIDI output for all tests that need it."""

	monkeypatch.setattr(mido, "get_output_names", _fake_get_output_names)
	monkeypatch.setattr(mido, "open_output", _fake_open_output)
