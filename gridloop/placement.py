"""Sounds placed on grid cells.

A placement is either a ``Single`` asset or a ``Combined`` pair: a primary
hit plus an accent layered on top of it (for example an open tone with a
slap). Assets are opaque handles owned by whichever audio output plays them.
"""

import dataclasses
import typing

import gridloop.constants
import gridloop.output


@dataclasses.dataclass (frozen=True)
class Single:

	"""
	One asset played at the track's gain.
	"""

	asset: typing.Any


@dataclasses.dataclass (frozen=True)
class Combined:

	"""
	A primary asset plus an accent asset played together.

	The accent component is boosted by ``accent_multiplier`` on top of the
	track gain, clamped so its effective gain never exceeds 1.0.
	"""

	primary: typing.Any
	accent: typing.Any
	accent_multiplier: float = gridloop.constants.DEFAULT_ACCENT_MULTIPLIER

	def __post_init__ (self) -> None:

		if not self.accent_multiplier > 0:
			raise ValueError(f"Accent multiplier must be positive, got {self.accent_multiplier}")


Placement = typing.Union[Single, Combined]


@dataclasses.dataclass (frozen=True)
class Trigger:

	"""
	One voice to start.

	``accent_multiplier`` is None for voices that play through the track's
	own gain stage, and the multiplier of the accent stage otherwise.
	"""

	asset: typing.Any
	accent_multiplier: typing.Optional[float] = None


def assets (placement: Placement) -> typing.Tuple[typing.Any, ...]:

	"""
	Return every asset referenced by a placement.
	"""

	if isinstance(placement, Single):
		return (placement.asset,)

	if isinstance(placement, Combined):
		return (placement.primary, placement.accent)

	raise TypeError(f"Not a placement: {placement!r}")


def accent_level (accent_multiplier: float, track_volume: float) -> float:

	"""
	Return the gain of an accent stage: the track volume boosted by the
	multiplier, capped at 1.0.
	"""

	return gridloop.output.clamp_gain(track_volume * accent_multiplier)


def triggers (placement: Placement) -> typing.List[Trigger]:

	"""
	Expand a placement into the voices that should start for it.

	``Single`` yields one voice. ``Combined`` yields the primary voice
	first, then the accent voice routed through the accent stage.
	"""

	if isinstance(placement, Single):
		return [Trigger(asset=placement.asset)]

	if isinstance(placement, Combined):
		return [
			Trigger(asset=placement.primary),
			Trigger(asset=placement.accent, accent_multiplier=placement.accent_multiplier)
		]

	raise TypeError(f"Not a placement: {placement!r}")
