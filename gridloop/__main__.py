import asyncio
import logging
import os
import signal
import sys
import typing

import yaml

import gridloop.audio_output
import gridloop.constants
import gridloop.engine
import gridloop.midi_output
import gridloop.output
import gridloop.placement


logger = logging.getLogger(__name__)


def load_config (config_path: str = 'config.yaml') -> dict:

	"""
	Load configuration from a YAML file.
	"""

	if not os.path.exists(config_path):
		logger.warning(f"Config file {config_path} not found. Using defaults.")
		return {}

	with open(config_path, 'r') as f:
		return yaml.safe_load(f) or {}


def build_output (config: dict) -> gridloop.output.AudioOutput:

	"""
	Create the audio output named by ``output.backend`` ("sounddevice" or "midi").
	"""

	output_config = config.get('output', {}) or {}
	backend = output_config.get('backend', 'sounddevice')

	if backend == 'midi':
		return gridloop.midi_output.MidiOutput(device_name=output_config.get('device'))

	if backend == 'sounddevice':
		return gridloop.audio_output.SoundDeviceOutput(
			device = output_config.get('device'),
			sample_rate = output_config.get('sample_rate', gridloop.constants.DEFAULT_SAMPLE_RATE)
		)

	raise ValueError(f"Unknown output backend {backend!r} (expected 'sounddevice' or 'midi')")


def load_assets (track_config: dict, output: gridloop.output.AudioOutput) -> typing.Dict[str, typing.Any]:

	"""
	Resolve a track's named sounds into assets the output can play.

	MIDI outputs read ``notes`` (name -> note number); sample outputs read
	``samples`` (name -> file path). Sounds that fail to load map to None.
	"""

	assets: typing.Dict[str, typing.Any] = {}

	if isinstance(output, gridloop.audio_output.SoundDeviceOutput):
		for name, path in (track_config.get('samples') or {}).items():
			assets[name] = gridloop.audio_output.load_sample(path, sample_rate=output.sample_rate, channels=output.channels)
	else:
		for name, note in (track_config.get('notes') or {}).items():
			assets[name] = gridloop.midi_output.MidiNote(note=int(note))

	return assets


def parse_placement (value: typing.Any, assets: typing.Dict[str, typing.Any]) -> typing.Optional[gridloop.placement.Placement]:

	"""
	Turn a cell entry into a placement.

	``"open"`` is a single sound. ``["open", "slap"]`` combines a primary and
	an accent; a third list item overrides the accent multiplier.
	"""

	if isinstance(value, str):
		return gridloop.placement.Single(assets.get(value))

	if isinstance(value, list) and len(value) in (2, 3):
		multiplier = float(value[2]) if len(value) == 3 else gridloop.constants.DEFAULT_ACCENT_MULTIPLIER
		return gridloop.placement.Combined(assets.get(value[0]), assets.get(value[1]), multiplier)

	logger.error(f"Cannot understand cell entry {value!r}")
	return None


def build_engine (config: dict, output: typing.Optional[gridloop.output.AudioOutput] = None) -> gridloop.engine.Engine:

	"""
	Create an engine and its tracks from a configuration dictionary.
	"""

	if output is None:
		output = build_output(config)

	sequencer = config.get('sequencer', {}) or {}
	numerator, denominator = sequencer.get('time_signature', [gridloop.constants.DEFAULT_NUMERATOR, gridloop.constants.DEFAULT_DENOMINATOR])

	engine = gridloop.engine.Engine(
		output,
		bpm = sequencer.get('bpm', gridloop.constants.DEFAULT_BPM),
		time_signature = (numerator, denominator),
		subdivision = sequencer.get('subdivision', gridloop.constants.DEFAULT_SUBDIVISION),
		loop = sequencer.get('loop', True),
		lookahead = sequencer.get('lookahead', gridloop.constants.LOOKAHEAD_SECONDS),
		tick_interval = sequencer.get('tick_interval', gridloop.constants.TICK_INTERVAL_SECONDS)
	)

	engine.set_master_volume(config.get('master_volume', gridloop.constants.MAX_GAIN))

	for track_config in config.get('tracks', []) or []:

		track_id = str(track_config['id'])
		engine.add_track(track_id)
		engine.set_track_volume(track_id, track_config.get('volume', gridloop.constants.MAX_GAIN))
		engine.set_track_muted(track_id, track_config.get('muted', False))

		assets = load_assets(track_config, output)

		for column, value in (track_config.get('cells') or {}).items():
			placement = parse_placement(value, assets)
			if placement is not None:
				engine.add_placement(track_id, int(column), placement)

	return engine


async def run (engine: gridloop.engine.Engine) -> None:

	"""
	Play until Ctrl+C, or until the transport stops when looping is off.
	"""

	await engine.start()

	stop_event = asyncio.Event()
	loop = asyncio.get_running_loop()

	for sig in (signal.SIGINT, signal.SIGTERM):
		loop.add_signal_handler(sig, stop_event.set)

	engine.play()
	logger.info("Playing. Press Ctrl+C to stop.")

	waiters = [asyncio.create_task(stop_event.wait()), asyncio.create_task(engine.wait_stopped())]
	await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

	for waiter in waiters:
		waiter.cancel()

	await engine.shutdown()


def main () -> None:

	"""
	Main entry point: ``python -m gridloop [config.yaml]``.
	"""

	logging.basicConfig(level=logging.INFO)

	config_path = sys.argv[1] if len(sys.argv) > 1 else 'config.yaml'
	config = load_config(config_path)

	engine = build_engine(config)

	asyncio.run(run(engine))


if __name__ == "__main__":
	main()
