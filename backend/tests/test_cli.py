"""
Tests for the render-gateway command line.

GIVEN: a plan JSON file on disk
WHEN: compile / route is invoked through main()
THEN: the exit code and printed output follow the documented contract
"""

import json

import pytest

from render_gateway.cli import main


@pytest.fixture
def plan_file(tmp_path, plan_dict):
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(plan_dict))
    return path


def run(argv, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    out, err = capsys.readouterr()
    return exc_info.value.code, out, err


class TestCompile:

    def test_prints_shell_command(self, plan_file, capsys):
        code, out, _ = run(["compile", str(plan_file), "--source", "/media/in.mp4", "-o", "out.mp4"], capsys)

        assert code == 0
        assert out.startswith("ffmpeg -hide_banner -y -i /media/in.mp4")
        assert "-filter_complex" in out
        assert out.strip().endswith("out.mp4")

    def test_json_output(self, plan_file, capsys):
        code, out, _ = run(["compile", str(plan_file), "--source", "/media/in.mp4", "--json"], capsys)
        body = json.loads(out)

        assert code == 0
        assert body["command"] == "ffmpeg"
        assert body["args"][-1] == "output.mp4"

    def test_plan_export_engine(self, plan_file, capsys):
        code, out, _ = run(
            ["compile", str(plan_file), "--source", "/media/in.mp4", "--engine", "plan_export", "--json"],
            capsys,
        )
        assert code == 0
        assert json.loads(out)["command"] == "ffmpeg"

    @pytest.mark.parametrize("engine", ["webcodecs", "handbrake"])
    def test_engine_without_compiler(self, plan_file, capsys, engine):
        code, _, err = run(["compile", str(plan_file), "--source", "/media/in.mp4", "--engine", engine], capsys)

        assert code == 4
        assert "ERROR" in err

    def test_unbound_assets_fail_validation(self, plan_file, capsys):
        code, _, err = run(["compile", str(plan_file)], capsys)

        assert code == 1
        assert "PLAN_DANGLING_REFERENCE" in err

    def test_missing_file(self, tmp_path, capsys):
        code, _, err = run(["compile", str(tmp_path / "absent.json")], capsys)

        assert code == 4
        assert "not found" in err

    def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text("{plan")

        code, _, err = run(["compile", str(path)], capsys)

        assert code == 4
        assert "Invalid JSON" in err

    def test_malformed_plan(self, tmp_path, capsys, plan_dict):
        plan_dict["output_format"]["fps"] = "thirty"
        path = tmp_path / "plan.json"
        path.write_text(json.dumps(plan_dict))

        code, _, err = run(["compile", str(path), "--source", "/media/in.mp4"], capsys)

        assert code == 1
        assert "Malformed plan" in err


class TestRoute:

    def test_default_engine(self, plan_file, capsys):
        code, out, _ = run(["route", str(plan_file), "--source", "/media/in.mp4"], capsys)
        decision = json.loads(out)

        assert code == 0
        assert decision["selected"] == "server_ffmpeg"
        assert decision["fallbackChain"] == []
        assert "text_overlay" in decision["required"]

    def test_fallback_chain(self, plan_file, capsys):
        code, out, _ = run(
            ["route", str(plan_file), "--source", "/media/in.mp4", "--engines", "webcodecs,server_ffmpeg"],
            capsys,
        )
        decision = json.loads(out)

        assert code == 0
        assert decision["selected"] == "server_ffmpeg"
        assert decision["fallbackChain"][0]["engine"] == "webcodecs"
        assert decision["fallbackChain"][0]["reason"].startswith("missing capability:")
        assert "text_overlay" in decision["fallbackChain"][0]["missing"]

    def test_only_limited_engines_falls_back_to_export(self, plan_file, capsys):
        code, out, _ = run(
            ["route", str(plan_file), "--source", "/media/in.mp4", "--engines", "cloudinary"], capsys
        )
        decision = json.loads(out)

        assert code == 0
        assert decision["selected"] == "plan_export"

    def test_unknown_engine(self, plan_file, capsys):
        code, _, err = run(["route", str(plan_file), "--source", "/media/in.mp4", "--engines", "remotion"], capsys)
        assert code == 4


def test_command_required(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 2
