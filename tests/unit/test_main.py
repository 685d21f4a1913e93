"""Tests for the command-line entrypoint."""

import json

import pytest

from sovits_player.main import _parse_assignments, build_parser, main


@pytest.fixture
def env(tmp_path, monkeypatch):
    store_path = tmp_path / "params.json"
    monkeypatch.setenv("PARAMS_STORE_PATH", str(store_path))
    monkeypatch.setenv("LOG_JSON", "false")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.chdir(tmp_path)
    return store_path


class TestParsing:
    def test_assignments_parse_json_values(self):
        assert _parse_assignments(["top_k=10", "split_bucket=false", "text_split_method=cut3"]) == {
            "top_k": 10,
            "split_bucket": False,
            "text_split_method": "cut3",
        }

    def test_assignment_without_equals(self):
        with pytest.raises(ValueError):
            _parse_assignments(["top_k"])

    def test_speak_requires_text_or_file(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["speak"])

    def test_speak_flags(self):
        args = build_parser().parse_args(["speak", "你好", "--ref-audio", "/r.wav", "--no-stream"])
        assert (args.text, args.ref_audio, args.no_stream) == ("你好", "/r.wav", True)


class TestParamsCommand:
    def test_set_then_show(self, env, capsys):
        assert main(["params", "set", "top_k=12", "--ref-audio", "/voices/a.wav"]) == 0
        capsys.readouterr()

        assert main(["params", "show"]) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["reference_audio_path"] == "/voices/a.wav"
        assert shown["params"]["top_k"] == 12
        assert env.exists()

    def test_set_out_of_range_fails(self, env, capsys):
        assert main(["params", "set", "speed_factor=5"]) == 1
        assert "speed_factor" in capsys.readouterr().err
        assert not env.exists()

    def test_set_unknown_key_fails(self, env, capsys):
        assert main(["params", "set", "top_kk=3"]) == 1
        assert "top_kk" in capsys.readouterr().err
        assert not env.exists()


class TestSpeakCommand:
    def test_missing_reference_audio(self, env):
        assert main(["speak", "你好"]) == 2


class TestProbeCommand:
    def test_unreachable_server(self, env, monkeypatch, capsys):
        from aiohttp.test_utils import unused_port

        monkeypatch.setenv("SOVITS_PORT", str(unused_port()))
        monkeypatch.setenv("PROBE_TIMEOUT_S", "1")
        assert main(["probe"]) == 1
        assert "unavailable" in capsys.readouterr().err
