"""
gridloop - a grid-based, look-ahead drum sequencer engine for Python.

Sounds are placed on a grid of tracks (rows) and cells (columns). While the
transport plays, a coarse asyncio tick hands every trigger to the audio
output slightly ahead of time together with its exact start time, so the
output starts each sound on the right sample no matter how late the tick
woke up.

- **Transport.** ``play()``, ``pause()`` and ``stop()`` with resume from the
  paused position, looping or one-shot measures.
- **Tempo and meter.** BPM, time signature and a cell note value of 4, 8,
  16 or 32. Compound meters (6/8, 9/8, 12/8) group cells into dotted beats.
- **Tracks.** Per-track volume and mute, a master volume in series, all
  adjustable live. A cell holds a ``Single`` sound or a ``Combined`` primary
  plus accent (for example an open tone layered with a slap).
- **Events.** Observers subscribe to ``grid_cell_changed``, ``play``,
  ``stop``, ``bpm_changed`` and the rest of ``gridloop.engine.EVENT_NAMES``.
- **Outputs.** ``SoundDeviceOutput`` plays decoded samples on the sound card;
  ``MidiOutput`` plays drum notes on a MIDI port.

Minimal example:

    ```python
    import asyncio
    import gridloop
    import gridloop.midi_output

    async def main ():
        engine = gridloop.Engine(gridloop.midi_output.MidiOutput(), bpm=110)
        engine.add_track("kick")
        for column in (0, 4, 8, 12):
            engine.add_placement("kick", column, gridloop.Single(gridloop.midi_output.MidiNote(36)))
        await engine.start()
        engine.play()
        await asyncio.sleep(8)
        await engine.shutdown()

    asyncio.run(main())
    ```

Package-level exports: ``Engine``, ``TransportState``, ``Single``, ``Combined``.
"""

import gridloop.engine
import gridloop.placement


Engine = gridloop.engine.Engine
TransportState = gridloop.engine.TransportState
Single = gridloop.placement.Single
Combined = gridloop.placement.Combined
