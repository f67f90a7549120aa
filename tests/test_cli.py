import json

import mido
import pytest

from midi_to_ow import convert_midi, load_midi, main


def _write_midi(path, tracks, midi_type=1):
    mid = mido.MidiFile(type=midi_type, ticks_per_beat=480)
    for messages in tracks:
        track = mido.MidiTrack()
        track.extend(messages)
        mid.tracks.append(track)
    mid.save(str(path))
    return str(path)


def _conductor(tempo=500000):
    return [
        mido.MetaMessage("set_tempo", tempo=tempo, time=0),
        mido.MetaMessage("end_of_track", time=0),
    ]


def _melody(channel=0):
    return [
        mido.MetaMessage("track_name", name="Piano", time=0),
        mido.Message("note_on", note=60, velocity=80, channel=channel, time=0),
        mido.Message("note_on", note=64, velocity=80, channel=channel, time=0),
        mido.Message("note_off", note=60, velocity=0, channel=channel, time=480),
        mido.Message("note_on", note=64, velocity=0, channel=channel, time=0),
        mido.Message("note_on", note=67, velocity=80, channel=channel, time=0),
        mido.Message("note_off", note=67, velocity=0, channel=channel, time=480),
        mido.MetaMessage("end_of_track", time=0),
    ]


@pytest.fixture
def song(tmp_path):
    return _write_midi(tmp_path / "song.mid", [_conductor(), _melody()])


def test_load_midi_reads_notes_in_seconds(song):
    timeline = load_midi(song)

    # The conductor track has no notes and yields no timeline track.
    assert timeline["track_count"] == 2
    assert len(timeline["tracks"]) == 1
    melody = timeline["tracks"][0]
    assert melody["channel"] == 0
    assert melody["name"] == "Piano"
    assert [(n["time"], n["midi"], n["velocity"]) for n in melody["notes"]] == [
        (0.0, 60, 80),
        (0.0, 64, 80),
        (0.5, 67, 80),
    ]
    assert timeline["duration"] == pytest.approx(1.0)


def test_load_midi_follows_tempo_changes(tmp_path):
    conductor = [
        mido.MetaMessage("set_tempo", tempo=1000000, time=0),
        mido.MetaMessage("set_tempo", tempo=250000, time=480),
    ]
    melody = [
        mido.Message("note_on", note=60, velocity=80, time=0),
        mido.Message("note_on", note=62, velocity=80, time=480),
        mido.Message("note_on", note=64, velocity=80, time=480),
        mido.Message("note_off", note=64, velocity=0, time=480),
    ]
    timeline = load_midi(_write_midi(tmp_path / "tempo.mid", [conductor, melody]))

    times = [n["time"] for n in timeline["tracks"][0]["notes"]]
    assert times == pytest.approx([0.0, 1.0, 1.25])
    # Notes 60 and 62 never end, they are closed at the end of the track.
    assert timeline["duration"] == pytest.approx(1.5)


def test_load_midi_tags_tracks_by_channel(tmp_path):
    path = _write_midi(tmp_path / "drums.mid", [_conductor(), _melody(channel=9), _melody(channel=3)])
    timeline = load_midi(path)

    assert [t["channel"] for t in timeline["tracks"]] == [9, 3]


@pytest.mark.parametrize("drum_first", [False, True])
def test_type_0_file_drops_only_percussion_notes(tmp_path, drum_first):
    piano = mido.Message("note_on", note=60, velocity=80, channel=0, time=0)
    drum = mido.Message("note_on", note=36, velocity=100, channel=9, time=0)
    messages = [drum, piano] if drum_first else [piano, drum]
    messages += [
        mido.Message("note_off", note=60, velocity=0, channel=0, time=480),
        mido.Message("note_off", note=36, velocity=0, channel=9, time=0),
    ]
    timeline = load_midi(_write_midi(tmp_path / "mixed.mid", [messages], midi_type=0))

    assert timeline["track_count"] == 1
    assert [(t["channel"], [n["midi"] for n in t["notes"]]) for t in timeline["tracks"]] == [
        (0, [60]),
        (9, [36]),
    ]

    result = convert_midi(timeline)
    assert result["errors"] == []
    assert result["chords"] == [(0.0, [36])]
    assert any("type 0" in w for w in result["warnings"])


def test_load_midi_rejects_type_2(tmp_path):
    path = _write_midi(tmp_path / "type2.mid", [_melody()], midi_type=2)

    with pytest.raises(ValueError):
        load_midi(path)


def test_cli_writes_rules(song, tmp_path, capsys):
    output = tmp_path / "song.txt"

    assert main(["midi_to_ow.py", song, str(output)]) == 0

    rules = output.read_text(encoding="ascii")
    assert rules.startswith('rule("Max amount of bots required")')
    assert "Global.pitchArrays[0] = Array(364043);" in rules
    out = capsys.readouterr().out
    assert "Chords: 2" in out
    assert "Warning" not in out


def test_cli_without_compression_and_with_voices(song, tmp_path):
    output = tmp_path / "song.txt"

    assert main(["midi_to_ow.py", song, str(output), "--no-compression", "--voices", "9", "--quiet"]) == 0

    rules = output.read_text(encoding="ascii")
    assert "Global.maxBots = 9;" in rules
    assert "Global.compressedElementSize = 0;" in rules
    assert "Global.pitchArrays[0] = Array(36, 40, 43);" in rules


def test_cli_settings_file_and_flag_override(song, tmp_path):
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"startTime": 0.25, "voices": 7}), encoding="utf-8")
    output = tmp_path / "song.txt"

    code = main(
        ["midi_to_ow.py", song, str(output), "--settings", str(settings), "--voices", "8", "--no-compression"]
    )

    assert code == 0
    rules = output.read_text(encoding="ascii")
    assert "Global.maxBots = 8;" in rules
    assert "Global.pitchArrays[0] = Array(43);" in rules


def test_cli_trace_output(song, tmp_path):
    output = tmp_path / "song.txt"
    trace = tmp_path / "trace.txt"

    assert main(["midi_to_ow.py", song, str(output), "--trace-output", str(trace), "--quiet"]) == 0

    lines = trace.read_text(encoding="ascii").splitlines()
    assert "voices=6" in lines
    assert "t=0.000 delay=0 pitches=[36, 40]" in lines
    assert "t=0.500 delay=500 pitches=[43]" in lines


def test_cli_warns_on_type_0_file(tmp_path, capsys):
    path = _write_midi(tmp_path / "type0.mid", [_melody()], midi_type=0)
    output = tmp_path / "type0.txt"

    assert main(["midi_to_ow.py", path, str(output)]) == 0
    assert "Warning: the processed file is a type 0 file" in capsys.readouterr().out
    assert output.exists()


def test_cli_reports_missing_notes(tmp_path, capsys):
    path = _write_midi(tmp_path / "drums.mid", [_conductor(), _melody(channel=9)])
    output = tmp_path / "drums.txt"

    assert main(["midi_to_ow.py", path, str(output)]) == 1
    assert "Error: no notes found" in capsys.readouterr().out
    assert not output.exists()


@pytest.mark.parametrize(
    "extra",
    [["--voices", "5"], ["--voices", "12"], ["--start-time", "-1"]],
)
def test_cli_rejects_out_of_range_arguments(song, tmp_path, capsys, extra):
    output = tmp_path / "song.txt"

    assert main(["midi_to_ow.py", song, str(output), *extra]) == 2
    assert capsys.readouterr().out.startswith("Error:")
    assert not output.exists()


def test_cli_reports_unreadable_midi(tmp_path, capsys):
    path = tmp_path / "broken.mid"
    path.write_bytes(b"not a midi file")

    assert main(["midi_to_ow.py", str(path), str(tmp_path / "out.txt")]) == 2
    assert "Error: failed to read MIDI" in capsys.readouterr().out


def test_cli_reports_bad_settings_file(song, tmp_path, capsys):
    settings = tmp_path / "settings.json"
    settings.write_text("[1, 2]", encoding="utf-8")

    assert main(["midi_to_ow.py", song, str(tmp_path / "out.txt"), "--settings", str(settings)]) == 2
    assert "Error: failed to read settings" in capsys.readouterr().out
