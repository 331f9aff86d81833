import asyncio
import logging

import gridloop
import gridloop.midi_output

logging.basicConfig(level=logging.INFO)

# General MIDI drum notes.
KICK = gridloop.midi_output.MidiNote(36)
SNARE = gridloop.midi_output.MidiNote(38)
RIM = gridloop.midi_output.MidiNote(37)
CLOSED_HAT = gridloop.midi_output.MidiNote(42)


async def main () -> None:

	engine = gridloop.Engine(gridloop.midi_output.MidiOutput(), bpm=100)

	engine.add_track("kick")
	engine.add_track("snare")
	engine.add_track("hats")

	for column in (0, 6, 8, 11):
		engine.add_placement("kick", column, gridloop.Single(KICK))

	engine.add_placement("snare", 4, gridloop.Single(SNARE))
	engine.add_placement("snare", 12, gridloop.Combined(SNARE, RIM, accent_multiplier=1.5))

	for column in range(0, 16, 2):
		engine.add_placement("hats", column, gridloop.Single(CLOSED_HAT))

	engine.set_track_volume("hats", 0.4)

	def on_cell (column: int, when: float) -> None:

		# Print a beat marker on the first cell of each beat.
		if column >= 0 and column % engine.cells_per_beat == 0:
			print(f"beat {column // engine.cells_per_beat + 1}")

	engine.on_event("grid_cell_changed", on_cell)

	await engine.start()
	engine.play()

	# Drop the hats out for a while, then bring them back.
	await asyncio.sleep(4.8)
	engine.set_track_muted("hats", True)
	await asyncio.sleep(4.8)
	engine.set_track_muted("hats", False)
	await asyncio.sleep(4.8)

	await engine.shutdown()


if __name__ == "__main__":
	asyncio.run(main())
