#!/usr/bin/env python
"""Minimal MIDI -> Overwatch workshop converter.

Stage 1: MIDI parsing + chord aggregation (piano range, voice cap).
Stage 2: Chords -> song arrays (time interval, chord size, pitches).
Stage 3: Optional digit packing of the song arrays.
Stage 4: Emit workshop rules holding the arrays.
"""

import sys
import argparse
import json
import math
from collections import defaultdict

import mido

# Range of the Overwatch piano on the MIDI scale, one integer per semitone.
PIANO_RANGE = {"MIN": 24, "MAX": 88}
OCTAVE = 12
PERCUSSION_CHANNEL = 9
DEFAULT_TEMPO_US = 500000  # 120 BPM

# startTime: seconds into the song where reading begins.
# voices: bots required for playback, also the max pitches in one chord.
CONVERTER_SETTINGS_INFO = {
    "startTime": {"MIN": 0, "MAX": math.inf, "DEFAULT": 0, "TYPE": (int, float)},
    "voices": {"MIN": 6, "MAX": 11, "DEFAULT": 6, "TYPE": (int,)},
}

DEFAULT_SETTINGS = {key: info["DEFAULT"] for key, info in CONVERTER_SETTINGS_INFO.items()}

# Workshop arrays hold at most 999 elements per dimension.
MAX_OW_ARRAY_SIZE = 999

# Array elements allowed across all song data rules. Keeps the pasted script
# under the workshop Total Element Count with room left for the player script.
MAX_TOTAL_ARRAY_ELEMENTS = 9000

# Decimals kept in note times (1 ms).
NOTE_PRECISION = 3

# Longest interval (ms) between two chords.
MAX_TIME_INTERVAL = 9999

# Emission order of the song arrays.
SONG_ARRAY_NAMES = ("pitchArrays", "timeArrays", "chordArrays")

# Digits per song array element when packed.
SONG_DATA_ELEMENT_LENGTHS = {
    "pitchArrays": 2,
    "timeArrays": 4,
    "chordArrays": 1,
}

# Digits per packed integer. Workshop numbers stay exact up to 7 digits.
COMPRESSED_ELEMENT_LENGTH = 7

CONVERTER_WARNINGS = {
    "TYPE_0_FILE": "the processed file is a type 0 file and may have been converted incorrectly",
    "TRUNCATED": "array element limit reached, song stops at {stop_time:.3f}s",
}

CONVERTER_ERRORS = {
    "NO_NOTES_FOUND": "no notes found in MIDI file in the given time range",
    "PACKING_FAILED": "song data cannot be compressed ({detail}); disable compression or lower voices",
}


def _round_to_places(value: float, places: int) -> float:
    # Half-up, matching the rounding the workshop player expects.
    scale = 10 ** places
    return math.floor(value * scale + 0.5) / scale


def _chunks(values, size: int) -> list:
    return [values[i:i + size] for i in range(0, len(values), size)]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def normalize_settings(raw: dict | None) -> tuple[dict, list[str]]:
    """Validate converter settings field by field.

    Missing keys take their default. A value of the wrong type or outside its
    range is reported by name and replaced by the default; the other fields
    are kept.
    """
    settings = dict(DEFAULT_SETTINGS)
    warnings: list[str] = []
    if not raw:
        return settings, warnings
    for key, value in raw.items():
        info = CONVERTER_SETTINGS_INFO.get(key)
        if info is None:
            warnings.append(f"unknown setting '{key}' ignored")
            continue
        if isinstance(value, bool) or not isinstance(value, info["TYPE"]):
            warnings.append(
                f"setting '{key}' has invalid value {value!r}; using default {info['DEFAULT']}"
            )
            continue
        if not info["MIN"] <= value <= info["MAX"]:
            warnings.append(
                f"setting '{key}'={value} out of range {info['MIN']}..{info['MAX']}; "
                f"using default {info['DEFAULT']}"
            )
            continue
        settings[key] = value
    return settings, warnings


def load_settings(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("settings file must contain a JSON object")
    return data


# ---------------------------------------------------------------------------
# MIDI loading
# ---------------------------------------------------------------------------

def _build_tempo_segments(mid: mido.MidiFile) -> list[dict]:
    # Tempo changes of every track on one tick axis; 120 BPM until the first one.
    tempo_changes = [(0, DEFAULT_TEMPO_US)]
    tick = 0
    for msg in mido.merge_tracks(mid.tracks):
        tick += msg.time
        if msg.type != "set_tempo":
            continue
        if tempo_changes[-1][0] == tick:
            tempo_changes[-1] = (tick, int(msg.tempo))
        else:
            tempo_changes.append((tick, int(msg.tempo)))

    segments = []
    seconds_at_start = 0.0
    for i, (tick_start, tempo) in enumerate(tempo_changes):
        tick_end = tempo_changes[i + 1][0] if i + 1 < len(tempo_changes) else None
        segments.append(
            {
                "tick_start": tick_start,
                "tick_end": tick_end,
                "tempo_us": tempo,
                "seconds_at_start": seconds_at_start,
            }
        )
        if tick_end is not None:
            seconds_at_start += mido.tick2second(tick_end - tick_start, mid.ticks_per_beat, tempo)

    return segments


def _ticks_to_seconds(tick: int, segments: list[dict], tpb: int) -> float:
    seg = segments[-1]
    for candidate in segments:
        if candidate["tick_end"] is None or tick < candidate["tick_end"]:
            seg = candidate
            break
    return seg["seconds_at_start"] + mido.tick2second(tick - seg["tick_start"], tpb, seg["tempo_us"])


def _read_track_notes(track: mido.MidiTrack, segments: list[dict], tpb: int) -> dict[int, list[dict]]:
    """Pair note on/off messages of one file track, grouped by channel."""
    tick = 0
    # (channel, note) -> (start_seconds, velocity)
    active: dict[tuple[int, int], tuple[float, int]] = {}
    notes_by_channel: dict[int, list[dict]] = defaultdict(list)

    def close(key: tuple[int, int], seconds: float) -> None:
        start, velocity = active.pop(key)
        notes_by_channel[key[0]].append(
            {"time": start, "midi": key[1], "velocity": velocity, "duration": max(0.0, seconds - start)}
        )

    for msg in track:
        tick += msg.time
        if msg.type not in ("note_on", "note_off"):
            continue

        seconds = _ticks_to_seconds(tick, segments, tpb)
        key = (msg.channel, msg.note)
        if key in active:
            # Note off, or a retrigger closing the sounding note first.
            close(key, seconds)
        if msg.type == "note_on" and msg.velocity > 0:
            active[key] = (seconds, msg.velocity)

    # Close any hanging notes at end-of-track.
    end = _ticks_to_seconds(tick, segments, tpb)
    for key in list(active):
        close(key, end)

    for notes in notes_by_channel.values():
        notes.sort(key=lambda n: (n["time"], n["midi"]))
    return notes_by_channel


def load_midi(path: str) -> dict:
    """Read a MIDI file into the timeline consumed by convert_midi.

    Each file track is split into one timeline track per channel, so the
    percussion channel is dropped even when a track mixes channels (type 0
    files always do). `track_count` keeps the file's own track count.
    """
    mid = mido.MidiFile(path)
    if mid.type not in (0, 1):
        raise ValueError(f"unsupported MIDI type {mid.type}, use type 0 or type 1")
    segments = _build_tempo_segments(mid)

    tracks = []
    duration = 0.0
    for track in mid.tracks:
        notes_by_channel = _read_track_notes(track, segments, mid.ticks_per_beat)
        for channel in sorted(notes_by_channel):
            notes = notes_by_channel[channel]
            tracks.append({"name": track.name, "channel": channel, "notes": notes})
            for note in notes:
                duration = max(duration, note["time"] + note["duration"])

    return {"duration": duration, "track_count": len(mid.tracks), "tracks": tracks}


# ---------------------------------------------------------------------------
# Stage 1: chords
# ---------------------------------------------------------------------------

def transpose_pitch(pitch: int) -> int:
    while pitch < PIANO_RANGE["MIN"]:
        pitch += OCTAVE
    while pitch > PIANO_RANGE["MAX"]:
        pitch -= OCTAVE
    return pitch


def read_midi_data(timeline: dict, settings: dict) -> dict:
    """Group the timeline's notes into chords keyed by their rounded time.

    Returns the chords as a time-sorted list of (time, pitches) with pitches
    shifted so the piano's lowest key is 0, along with note counters,
    warnings and errors.
    """
    chords: dict[float, list[int]] = {}
    skipped_notes = 0
    transposed_notes = 0

    for track in timeline["tracks"]:
        if track.get("channel") == PERCUSSION_CHANNEL:
            continue

        for note in track["notes"]:
            # Note off, not played by the piano.
            if note["velocity"] == 0:
                continue
            if note["time"] < settings["startTime"]:
                continue

            pitch = int(note["midi"])
            if pitch < PIANO_RANGE["MIN"] or pitch > PIANO_RANGE["MAX"]:
                transposed_notes += 1
                pitch = transpose_pitch(pitch)
            pitch -= PIANO_RANGE["MIN"]

            time = _round_to_places(note["time"], NOTE_PRECISION)
            chord = chords.get(time)
            if chord is None:
                chords[time] = [pitch]
            elif pitch in chord:
                continue
            elif len(chord) < settings["voices"]:
                chord.append(pitch)
            else:
                skipped_notes += 1

    warnings: list[str] = []
    errors: list[str] = []
    if not chords:
        errors.append(CONVERTER_ERRORS["NO_NOTES_FOUND"])
    # Type 0 files have a single track holding every channel. The loader
    # splits tracks by channel, so count the file's own tracks.
    if timeline.get("track_count", len(timeline["tracks"])) == 1:
        warnings.append(CONVERTER_WARNINGS["TYPE_0_FILE"])

    return {
        "chords": [(time, sorted(chords[time])) for time in sorted(chords)],
        "skipped_notes": skipped_notes,
        "transposed_notes": transposed_notes,
        "warnings": warnings,
        "errors": errors,
    }


# ---------------------------------------------------------------------------
# Stage 2: song arrays
# ---------------------------------------------------------------------------

def _array_size(pitch_elements: int, time_elements: int, chord_elements: int, compressed: bool) -> int:
    if not compressed:
        return pitch_elements + time_elements + chord_elements
    # Each array is packed on its own, so each one rounds up separately.
    counts = {"pitchArrays": pitch_elements, "timeArrays": time_elements, "chordArrays": chord_elements}
    return sum(
        math.ceil(counts[name] * SONG_DATA_ELEMENT_LENGTHS[name] / COMPRESSED_ELEMENT_LENGTH)
        for name in SONG_ARRAY_NAMES
    )


def estimate_array_size(song_arrays: dict, compression_enabled: bool) -> int:
    return _array_size(
        len(song_arrays["pitchArrays"]),
        len(song_arrays["timeArrays"]),
        len(song_arrays["chordArrays"]),
        compression_enabled,
    )


def convert_to_arrays(
    chords: list[tuple[float, list[int]]],
    compression_enabled: bool,
    max_elements: int = MAX_TOTAL_ARRAY_ELEMENTS,
) -> tuple[dict, float | None]:
    """Turn sorted chords into the three song arrays.

    A chord is
      A) the interval (ms) since the previous chord, in timeArrays
      B) the amount of pitches in the chord, in chordArrays
      C) the pitches themselves, in pitchArrays

    Stops before the chord that would push the (packed, when compression is
    enabled) element count past max_elements and returns that chord's time
    as the stop time. Otherwise the stop time is the last chord's time.
    """
    song_arrays: dict[str, list[int]] = {name: [] for name in SONG_ARRAY_NAMES}
    if not chords:
        return song_arrays, None

    pitch_elements = 0
    time_elements = 0
    chord_elements = 0
    prev_time = chords[0][0]
    stop_time = None

    for chord_time, pitches in chords:
        pitch_elements += len(pitches)
        time_elements += 1
        chord_elements += 1
        if _array_size(pitch_elements, time_elements, chord_elements, compression_enabled) > max_elements:
            stop_time = chord_time
            break

        interval = int(_round_to_places((chord_time - prev_time) * 1000, 0))
        song_arrays["timeArrays"].append(min(interval, MAX_TIME_INTERVAL))
        song_arrays["chordArrays"].append(len(pitches))
        song_arrays["pitchArrays"].extend(sorted(pitches))
        prev_time = chord_time

    if stop_time is None:
        stop_time = chords[-1][0]
    return song_arrays, stop_time


# ---------------------------------------------------------------------------
# Stage 3: digit packing
# ---------------------------------------------------------------------------

def _pack_array(name: str, values: list[int], width: int) -> list[int]:
    limit = 10 ** width
    digits = []
    for value in values:
        if value < 0 or value >= limit:
            raise ValueError(f"{name} value {value} does not fit in {width} digit(s)")
        digits.append(f"{value:0{width}d}")
    buffer = "".join(digits)
    return [int(chunk) for chunk in _chunks(buffer, COMPRESSED_ELEMENT_LENGTH)]


def compress_song_arrays(song_arrays: dict) -> dict:
    """Pack several song array elements into each integer.

    Every element is zero padded to its array's digit length, the digits are
    joined and cut into integers of COMPRESSED_ELEMENT_LENGTH digits
    (the last one may be shorter). With a digit length of 3:

        data:       12, 0, 312, 2, 56, 23, 23, 4, 153, 123, 110
        compressed: 120003, 1200205, 6023023, 41531, 23110

    Workshop Total Element Count grows with the amount of pasted integers, not
    their size, so this trades cheap runtime unpacking for paste room.
    Raises ValueError when an element does not fit its digit length.
    """
    return {
        name: _pack_array(name, song_arrays[name], SONG_DATA_ELEMENT_LENGTHS[name])
        for name in SONG_ARRAY_NAMES
    }


def decompress_array(packed: list[int], width: int, count: int) -> list[int]:
    total_digits = count * width
    if total_digits == 0:
        if packed:
            raise ValueError("packed data present but no elements expected")
        return []
    if len(packed) != math.ceil(total_digits / COMPRESSED_ELEMENT_LENGTH):
        raise ValueError(f"expected {count} elements of {width} digit(s), got {len(packed)} packed values")

    last_length = total_digits - COMPRESSED_ELEMENT_LENGTH * (len(packed) - 1)
    parts = [f"{value:0{COMPRESSED_ELEMENT_LENGTH}d}" for value in packed[:-1]]
    parts.append(f"{packed[-1]:0{last_length}d}")
    buffer = "".join(parts)
    if len(buffer) != total_digits:
        raise ValueError("packed value wider than its chunk")
    return [int(chunk) for chunk in _chunks(buffer, width)]


def decompress_song_arrays(packed: dict, chord_count: int) -> dict:
    """Reverse compress_song_arrays, the way the workshop player unpacks."""
    chord_sizes = decompress_array(
        packed["chordArrays"], SONG_DATA_ELEMENT_LENGTHS["chordArrays"], chord_count
    )
    return {
        "pitchArrays": decompress_array(
            packed["pitchArrays"], SONG_DATA_ELEMENT_LENGTHS["pitchArrays"], sum(chord_sizes)
        ),
        "timeArrays": decompress_array(
            packed["timeArrays"], SONG_DATA_ELEMENT_LENGTHS["timeArrays"], chord_count
        ),
        "chordArrays": chord_sizes,
    }


# ---------------------------------------------------------------------------
# Stage 4: workshop rules
# ---------------------------------------------------------------------------

def _format_rule(name: str, actions: str) -> str:
    return f'rule("{name}"){{event{{Ongoing-Global;}}actions{{{actions}}}}}'


def write_workshop_rules(song_arrays: dict, max_voices: int, compressed: bool = True) -> str:
    element_size = COMPRESSED_ELEMENT_LENGTH if compressed else 0
    rules = [
        _format_rule(
            "Max amount of bots required",
            f"Global.maxBots = {max_voices};"
            f"Global.maxArraySize = {MAX_OW_ARRAY_SIZE};"
            f"Global.compressedElementSize = {element_size};",
        )
    ]

    for name in SONG_ARRAY_NAMES:
        for ow_index, group in enumerate(_chunks(song_arrays[name], MAX_OW_ARRAY_SIZE)):
            values = ", ".join(str(v) for v in group)
            rules.append(_format_rule(name, f"Global.{name}[{ow_index}] = Array({values});"))

    return "\n".join(rules) + "\n"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def convert_midi(timeline: dict, settings: dict | None = None, compression_enabled: bool = True) -> dict:
    """Convert a MIDI timeline (see load_midi) to workshop rules.

    Returns a dict with:
        rules:              workshop rules, empty when an error occurred
        transposed_notes:   notes moved by octaves into the piano range
        skipped_notes:      notes dropped from chords already holding `voices` pitches
        duration:           full duration (s) of the song
        stop_time:          time (s) where conversion stopped, at the song's end
                            or at the array element limit; None when nothing was converted
        chords:             the converted (time, pitches) chords
        time_intervals:     the unpacked timeArrays, one interval (ms) per converted chord
        array_elements:     element count per emitted song array
        settings:           the settings actually used
        warnings, errors:   messages in the order they were produced
    """
    settings, warnings = normalize_settings(settings)
    midi_info = read_midi_data(timeline, settings)
    warnings.extend(midi_info["warnings"])
    errors = list(midi_info["errors"])

    rules = ""
    stop_time = None
    converted: list[tuple[float, list[int]]] = []
    time_intervals: list[int] = []
    array_elements = {name: 0 for name in SONG_ARRAY_NAMES}

    chords = midi_info["chords"]
    if chords:
        song_arrays, stop_time = convert_to_arrays(chords, compression_enabled)
        converted = chords[:len(song_arrays["chordArrays"])]
        time_intervals = list(song_arrays["timeArrays"])
        if len(converted) < len(chords):
            warnings.append(CONVERTER_WARNINGS["TRUNCATED"].format(stop_time=stop_time))
        try:
            if compression_enabled:
                song_arrays = compress_song_arrays(song_arrays)
        except ValueError as exc:
            errors.append(CONVERTER_ERRORS["PACKING_FAILED"].format(detail=exc))
        else:
            rules = write_workshop_rules(song_arrays, settings["voices"], compression_enabled)
            array_elements = {name: len(song_arrays[name]) for name in SONG_ARRAY_NAMES}

    return {
        "rules": rules,
        "transposed_notes": midi_info["transposed_notes"],
        "skipped_notes": midi_info["skipped_notes"],
        "duration": timeline["duration"],
        "stop_time": stop_time,
        "chords": converted,
        "time_intervals": time_intervals,
        "array_elements": array_elements,
        "settings": settings,
        "warnings": warnings,
        "errors": errors,
    }


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def _format_summary(result: dict) -> str:
    counts = result["array_elements"]
    elements = " ".join(f"{name}={counts[name]}" for name in SONG_ARRAY_NAMES)
    lines = [
        f"Chords: {len(result['chords'])} (voices={result['settings']['voices']}, "
        f"start={result['settings']['startTime']}s)",
        f"Array elements: {elements} total={sum(counts.values())}/{MAX_TOTAL_ARRAY_ELEMENTS}",
        f"Notes: transposed={result['transposed_notes']} skipped={result['skipped_notes']}",
    ]
    if result["stop_time"] is not None:
        lines.append(f"Duration: {result['duration']:.3f}s stop={result['stop_time']:.3f}s")
    return "\n".join(lines) + "\n"


def _write_trace(
    path: str,
    header_lines: list[str],
    chords: list[tuple[float, list[int]]],
    time_intervals: list[int],
) -> None:
    lines = list(header_lines)
    lines.append("")
    for (time, pitches), delay in zip(chords, time_intervals):
        lines.append(f"t={time:.3f} delay={delay} pitches={pitches}")
    with open(path, "w", encoding="ascii", errors="ignore") as f:
        f.write("\n".join(lines) + "\n")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    voices = CONVERTER_SETTINGS_INFO["voices"]
    parser = argparse.ArgumentParser(description="Minimal MIDI -> Overwatch workshop rules")
    parser.add_argument("input_mid")
    parser.add_argument("output_rules")
    parser.add_argument(
        "--start-time",
        type=float,
        default=None,
        help="Seconds into the song where reading begins (default 0)",
    )
    parser.add_argument(
        "--voices",
        type=int,
        default=None,
        help=f"Bots required / max pitches per chord ({voices['MIN']}..{voices['MAX']}, default {voices['DEFAULT']})",
    )
    parser.add_argument(
        "--no-compression",
        dest="compression",
        action="store_false",
        default=True,
        help="Write one value per array element instead of packed integers",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="JSON settings file (startTime, voices); flags override it",
    )
    parser.add_argument(
        "--trace-output",
        type=str,
        default="",
        help="Write a trace log (converted chords with intervals) to this file",
    )
    parser.add_argument("--quiet", action="store_true", default=False, help="Do not print the summary")
    return parser.parse_args(argv[1:])


def main(argv: list[str]) -> int:
    args = _parse_args(argv)

    settings: dict = {}
    if args.settings:
        try:
            settings = load_settings(args.settings)
        except (OSError, ValueError) as exc:
            print(f"Error: failed to read settings ({exc}).")
            return 2

    if args.start_time is not None:
        if not args.start_time >= 0:
            print("Error: --start-time must be >= 0.")
            return 2
        settings["startTime"] = args.start_time
    if args.voices is not None:
        info = CONVERTER_SETTINGS_INFO["voices"]
        if not info["MIN"] <= args.voices <= info["MAX"]:
            print(f"Error: --voices must be in {info['MIN']}..{info['MAX']}.")
            return 2
        settings["voices"] = args.voices

    try:
        timeline = load_midi(args.input_mid)
    except (OSError, EOFError, ValueError) as exc:
        print(f"Error: failed to read MIDI ({exc}).")
        return 2

    result = convert_midi(timeline, settings, args.compression)
    for w in result["warnings"]:
        print(f"Warning: {w}")
    if result["errors"]:
        for e in result["errors"]:
            print(f"Error: {e}")
        return 1

    with open(args.output_rules, "w", encoding="ascii") as f:
        f.write(result["rules"])

    if args.trace_output:
        header_lines = [
            f"input={args.input_mid}",
            f"output={args.output_rules}",
            f"start_time={result['settings']['startTime']}",
            f"voices={result['settings']['voices']}",
            f"compression={args.compression}",
            f"stop_time={result['stop_time']}",
        ]
        _write_trace(args.trace_output, header_lines, result["chords"], result["time_intervals"])

    if not args.quiet:
        print(_format_summary(result), end="")
    return 0


def run() -> None:
    raise SystemExit(main(sys.argv))


if __name__ == "__main__":
    run()
