import logging
import typing

import mido

logger = logging.getLogger(__name__)


def select_output_device (device_name: typing.Optional[str] = None) -> typing.Tuple[typing.Optional[str], typing.Optional[typing.Any]]:

	"""
	Open a MIDI output port for ``MidiOutput``.

	A named port must exist. Without a name the first available port is
	used; when there are several, the others are listed in a warning so the
	right one can be set as ``output.device`` in the YAML config.

	Returns:
		A tuple of (port_name, port) or (None, None) when nothing could be opened.
	"""

	try:
		ports = mido.get_output_names()
	except Exception as e:
		logger.error(f"Cannot list MIDI outputs: {e}")
		return None, None

	if not ports:
		logger.error("No MIDI output ports available")
		return None, None

	if device_name is None:
		device_name = ports[0]

		if len(ports) > 1:
			logger.warning(f"Several MIDI outputs found, using {device_name!r}; set output.device to one of {ports}")

	elif device_name not in ports:
		logger.error(f"MIDI output {device_name!r} not found, available: {ports}")
		return None, None

	try:
		port = mido.open_output(device_name)
	except Exception as e:
		logger.error(f"Failed to open MIDI output {device_name!r}: {e}")
		return None, None

	logger.info(f"MIDI output {device_name!r} opened")

	return device_name, port


def gain_to_velocity (gain: float) -> int:

	"""
	Map a linear gain in [0.0, 1.0] to a MIDI velocity in [0, 127].
	"""

	return max(0, min(127, int(round(gain * 127))))
