import io
import json
import math

import pytest

import stage_timings
from stage_timings import (
    compute_timeline,
    find_degenerate_records,
    format_report,
    format_seconds,
    json_number,
    main,
    render,
    round_to_precision,
    stage_label,
    timeline_to_dict,
)


SAMPLE = "\n".join(
    [
        "[Pipeline] { (Checkout)",
        "10:00:01 [Pipeline] echo stage start:Checkout,1000",
        "10:00:02 [Pipeline] echo stage end:Checkout,2250",
        "10:00:02 [Pipeline] echo stage start:Build,2250",
        "10:00:09 [Pipeline] echo stage end:Build,9000",
        "10:00:09 [Pipeline] echo stage start:Test,9000",
        "10:00:12 [Pipeline] echo stage end:Test,12345",
    ]
)


def test_round_to_precision():
    assert round_to_precision(1.2344) == 1.234
    assert round_to_precision(2.0) == 2.0
    assert math.isnan(round_to_precision(math.nan))


def test_format_seconds_drops_trailing_zeros():
    assert format_seconds(5.0) == "5"
    assert format_seconds(1.2344) == "1.234"
    assert format_seconds(10.5) == "10.5"
    assert format_seconds(-0.0001) == "0"
    assert format_seconds(math.nan) == "nan"


def test_stage_label_and_report():
    timeline = compute_timeline(SAMPLE)

    assert [stage_label(record) for record in timeline.records] == [
        "Checkout, 1.25s",
        "Build, 6.75s",
        "Test, 3.345s",
    ]
    report = format_report(timeline)
    assert report.splitlines()[0] == "Timings - 11.345s"
    assert "  Build, 6.75s  [1.25s -> 8s]" in report


def test_find_degenerate_records():
    timeline = compute_timeline(
        "stage start:ok,1000\nstage end:ok,2000\nstage start:half,3000\nstage end:bad,x"
    )

    flagged = {record.name for record, _ in find_degenerate_records(timeline)}
    assert flagged == {"half", "bad"}


def test_timeline_to_dict_is_strict_json():
    timeline = compute_timeline(SAMPLE + "\nstage end:broken")

    data = timeline_to_dict(timeline)
    encoded = json.dumps(data, allow_nan=False)

    decoded = json.loads(encoded)
    by_name = {item["name"]: item for item in decoded["records"]}
    # The default start of "broken" is 0, so it sorts first.
    assert [item["name"] for item in decoded["records"]][0] == "broken"
    assert by_name["Checkout"]["left"] == pytest.approx(1.0 / 12.345 * 900)
    broken = by_name["broken"]
    assert broken["end"] is None
    assert broken["duration"] is None
    assert decoded["maxTimestamp"] == pytest.approx(12.345)


def test_timeline_to_dict_empty():
    assert timeline_to_dict(compute_timeline("")) == {
        "records": [],
        "total": 0.0,
        "maxTimestamp": 0.0,
    }


def test_render_writes_png(tmp_path):
    output = tmp_path / "charts" / "timings.png"

    render(compute_timeline(SAMPLE), output, dpi=50)

    assert output.exists()
    assert output.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"


def test_render_degenerate_timeline(tmp_path):
    output = tmp_path / "flat.png"

    timeline = compute_timeline("stage start:x,5\nstage end:x,5")
    assert not timeline.has_scale

    render(timeline, output, dpi=50)

    assert output.exists()


def test_render_skips_nan_bars(tmp_path):
    output = tmp_path / "nan.png"

    render(compute_timeline(SAMPLE + "\nstage end:y"), output, dpi=50)

    assert output.exists()


def test_main_missing_input(tmp_path, capsys):
    code = main(["-i", str(tmp_path / "missing.log"), "--no-png"])

    assert code == 1
    assert "[error] input log not found" in capsys.readouterr().err


def test_main_without_markers(tmp_path, capsys):
    log = tmp_path / "plain.log"
    log.write_text("nothing to see\n", encoding="utf-8")

    code = main(["-i", str(log), "--no-png"])

    assert code == 1
    assert "[error] no stage markers found" in capsys.readouterr().err


def test_main_writes_outputs(tmp_path, capsys):
    log = tmp_path / "build.log"
    log.write_text(SAMPLE + "\nstage start:Deploy\n", encoding="utf-8")
    png = tmp_path / "out.png"
    data = tmp_path / "out.json"

    code = main(
        ["-i", str(log), "-o", str(png), "--json", str(data), "--report", "--dpi", "50"]
    )

    assert code == 0
    assert png.exists()
    names = [item["name"] for item in json.loads(data.read_text(encoding="utf-8"))["records"]]
    assert names == ["Checkout", "Build", "Test", "Deploy"]
    captured = capsys.readouterr()
    assert "Timings - " in captured.out
    assert captured.out.count("[ok] wrote") == 2
    assert "[warn] stage 'Deploy'" in captured.err


def fake_stdin(data):
    return io.TextIOWrapper(io.BytesIO(data), encoding="utf-8")


def test_main_reads_stdin(monkeypatch, capsys):
    monkeypatch.setattr(stage_timings.sys, "stdin", fake_stdin(SAMPLE.encode("utf-8")))

    code = main(["--no-png", "--report"])

    assert code == 0
    assert "Test, 3.345s" in capsys.readouterr().out


def test_main_replaces_invalid_utf8_on_stdin(monkeypatch, capsys):
    data = b"\xff\xfe garbage\n" + SAMPLE.encode("utf-8") + b"\nstage start:caf\xe9,100\n"
    monkeypatch.setattr(stage_timings.sys, "stdin", fake_stdin(data))

    code = main(["--no-png", "--report"])

    assert code == 0
    out = capsys.readouterr().out
    assert "Test, " in out
    assert "caf�" in out


def test_main_custom_markers(monkeypatch, capsys):
    monkeypatch.setattr(
        stage_timings.sys,
        "stdin",
        fake_stdin(b"STAGE START:a,1000\nSTAGE END:a,1500\n"),
    )

    code = main(["--no-png", "--report", "--start-marker", "STAGE START", "--end-marker", "STAGE END"])

    assert code == 0
    assert "a, 0.5s" in capsys.readouterr().out


def test_json_number_drops_non_finite_values():
    assert json_number(1.5) == 1.5
    assert json_number(-0.25) == -0.25
    assert json_number(math.nan) is None
    assert json_number(math.inf) is None
    assert json_number(-math.inf) is None
