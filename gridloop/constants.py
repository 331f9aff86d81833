"""Default values and fixed ranges for the gridloop engine.

Timing values are in seconds, in the audio output's clock time base.
"""

DEFAULT_BPM = 120.0
DEFAULT_NUMERATOR = 4
DEFAULT_DENOMINATOR = 4
DEFAULT_SUBDIVISION = 16

# Grid cells may represent quarter, eighth, sixteenth or thirty-second notes.
SUBDIVISIONS = (4, 8, 16, 32)

# Meters whose felt beat is a dotted quarter (three eighth notes).
COMPOUND_NUMERATORS = (6, 9, 12)

# A whole note lasts 240 / BPM seconds (four quarter notes of 60 / BPM each).
SECONDS_PER_WHOLE_NOTE_AT_1_BPM = 240.0

LOOKAHEAD_SECONDS = 0.1
TICK_INTERVAL_SECONDS = 0.05

DEFAULT_ACCENT_MULTIPLIER = 3.0

MIN_GAIN = 0.0
MAX_GAIN = 1.0

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_BLOCK_SIZE = 256

MIDI_DRUM_CHANNEL = 9
MIDI_NOTE_SECONDS = 0.1
