"""Tempo and meter arithmetic for the grid.

Every function here is pure. The engine calls them on each scheduling pass
with the live configuration, so nothing is cached between passes.
"""

import typing

import gridloop.constants


class MeterError (ValueError):

	"""
	Raised when a tempo, meter or subdivision cannot produce a whole grid.
	"""


def validate_bpm (bpm: float) -> float:

	"""
	Return *bpm* as a float, or raise ``MeterError`` if it is not positive.
	"""

	if isinstance(bpm, bool) or not isinstance(bpm, (int, float)):
		raise MeterError(f"BPM must be a number, got {bpm!r}")

	if not bpm > 0:
		raise MeterError(f"BPM must be positive, got {bpm}")

	return float(bpm)


def validate_subdivision (subdivision: int) -> int:

	"""
	Check that *subdivision* is one of the supported note values.
	"""

	if subdivision not in gridloop.constants.SUBDIVISIONS:
		raise MeterError(f"Subdivision must be one of {gridloop.constants.SUBDIVISIONS}, got {subdivision!r}")

	return int(subdivision)


def validate_time_signature (numerator: int, denominator: int) -> typing.Tuple[int, int]:

	"""
	Check that both parts of a time signature are positive integers.
	"""

	for part in (numerator, denominator):
		if isinstance(part, bool) or not isinstance(part, int) or part <= 0:
			raise MeterError(f"Time signature parts must be positive integers, got {numerator}/{denominator}")

	return numerator, denominator


def cell_seconds (bpm: float, subdivision: int) -> float:

	"""
	Return the duration of one grid cell in seconds.

	One whole note lasts ``240 / bpm`` seconds and a cell is one
	``1/subdivision`` note, so at 120 BPM a sixteenth cell lasts 0.125 s.
	"""

	bpm = validate_bpm(bpm)
	subdivision = validate_subdivision(subdivision)

	return gridloop.constants.SECONDS_PER_WHOLE_NOTE_AT_1_BPM / (bpm * subdivision)


def columns_per_measure (numerator: int, denominator: int, subdivision: int) -> int:

	"""
	Return the number of grid columns in one measure.

	The subdivision must be a whole multiple of the denominator (sixteenths
	divide eighths and quarters, quarters do not divide eighths). Fractional
	grids are rejected rather than truncated.

	Example:
		```python
		columns_per_measure(4, 4, 16)   # 16
		columns_per_measure(6, 8, 16)   # 12
		columns_per_measure(6, 8, 4)    # MeterError
		```
	"""

	numerator, denominator = validate_time_signature(numerator, denominator)
	subdivision = validate_subdivision(subdivision)

	if subdivision % denominator != 0:
		raise MeterError(
			f"Subdivision {subdivision} does not divide evenly into {numerator}/{denominator}; "
			f"it must be a multiple of the denominator"
		)

	return numerator * (subdivision // denominator)


def is_compound_meter (numerator: int, denominator: int) -> bool:

	"""
	Return True for 6/8, 9/8 and 12/8, whose beat is a dotted quarter.
	"""

	return denominator == 8 and numerator in gridloop.constants.COMPOUND_NUMERATORS


def cells_per_beat (numerator: int, denominator: int, subdivision: int) -> int:

	"""
	Return how many cells make up one felt beat, for drawing beat markers.

	Simple meters count the denominator note as the beat. Compound meters
	count a dotted quarter (three eighth notes). Never less than one cell.
	"""

	columns_per_measure(numerator, denominator, subdivision)

	if is_compound_meter(numerator, denominator):
		return max(1, 3 * subdivision // 8)

	return max(1, subdivision // denominator)
