import dataclasses
import types
import typing

import gridloop.constants
import gridloop.output
import gridloop.placement


@dataclasses.dataclass
class Track:

	"""
	One row of the grid: a sparse column -> placement map with its own gain.

	Attributes:
		track_id: Unique name of the track.
		stage: The track's gain stage on the audio output.
		volume: The level to use whenever the track is not muted.
		muted: When True the stage is held at 0 and the track is skipped
			by the scheduler.
		cells: Placements keyed by column index.
		accent_stages: One gain stage per accent multiplier used on the track,
			feeding the master alongside ``stage``.
	"""

	track_id: str
	stage: gridloop.output.GainStage
	volume: float = gridloop.constants.MAX_GAIN
	muted: bool = False
	cells: typing.Dict[int, gridloop.placement.Placement] = dataclasses.field(default_factory=dict)
	accent_stages: typing.Dict[float, gridloop.output.GainStage] = dataclasses.field(default_factory=dict)


	@property
	def live_gain (self) -> float:

		"""Return the gain currently applied to the stage."""

		return 0.0 if self.muted else self.volume


	def apply_volume (self, volume: float) -> None:

		"""
		Record *volume* as the restore level and apply it unless muted.
		"""

		self.volume = gridloop.output.clamp_gain(volume)

		if not self.muted:
			self.stage.set_gain(self.volume)

		self._sync_accents()


	def apply_mute (self, muted: bool) -> None:

		"""
		Mute (stage to 0) or unmute (stage back to the stored volume).
		"""

		self.muted = muted
		self.stage.set_gain(self.live_gain)
		self._sync_accents()


	def add_accent_stage (self, accent_multiplier: float, stage: gridloop.output.GainStage) -> None:

		"""
		Register the stage that accent voices with *accent_multiplier* play through.
		"""

		self.accent_stages[accent_multiplier] = stage
		stage.set_gain(gridloop.placement.accent_level(accent_multiplier, self.live_gain))


	def _sync_accents (self) -> None:

		for accent_multiplier, stage in self.accent_stages.items():
			stage.set_gain(gridloop.placement.accent_level(accent_multiplier, self.live_gain))


	def snapshot (self) -> "TrackSnapshot":

		"""Return a read-only copy of this track's state."""

		return TrackSnapshot(
			track_id = self.track_id,
			volume = self.volume,
			muted = self.muted,
			cells = types.MappingProxyType(dict(self.cells))
		)


@dataclasses.dataclass (frozen=True)
class TrackSnapshot:

	"""
	An immutable view of a track, handed to observers.
	"""

	track_id: str
	volume: float
	muted: bool
	cells: typing.Mapping[int, gridloop.placement.Placement]


class TrackRegistry:

	"""
	Insertion-ordered collection of tracks.

	The engine only mutates the registry while the transport is stopped, so
	the scheduler can read it during playback without locking.
	"""

	def __init__ (self) -> None:

		self._tracks: typing.Dict[str, Track] = {}


	def __contains__ (self, track_id: object) -> bool:

		return track_id in self._tracks


	def __iter__ (self) -> typing.Iterator[Track]:

		return iter(list(self._tracks.values()))


	def __len__ (self) -> int:

		return len(self._tracks)


	def get (self, track_id: str) -> typing.Optional[Track]:

		return self._tracks.get(track_id)


	def add (self, track: Track) -> None:

		"""
		Add a track. Raises ``ValueError`` if the id is already taken.
		"""

		if track.track_id in self._tracks:
			raise ValueError(f"Track {track.track_id!r} already exists")

		self._tracks[track.track_id] = track


	def remove (self, track_id: str) -> Track:

		"""
		Remove and return a track. Raises ``KeyError`` for unknown ids.
		"""

		return self._tracks.pop(track_id)


	def placements_at (self, column: int) -> typing.Iterator[typing.Tuple[Track, gridloop.placement.Placement]]:

		"""
		Yield (track, placement) for every unmuted track with a sound at *column*.
		"""

		for track in self._tracks.values():

			if track.muted:
				continue

			placement = track.cells.get(column)

			if placement is not None:
				yield track, placement


	def column_span (self) -> int:

		"""
		Return one past the highest occupied column on any track (0 when empty).
		"""

		span = 0

		for track in self._tracks.values():
			if track.cells:
				span = max(span, max(track.cells) + 1)

		return span
