"""sovits-player entrypoint.

Composition root: loads config, builds the client, audio player and
orchestrator explicitly, then runs one command.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from sovits_player.audio.player import StreamingAudioPlayer
from sovits_player.client import SynthesisClient
from sovits_player.config import Settings, get_settings
from sovits_player.errors import SovitsError
from sovits_player.logging import get_logger, setup_logging
from sovits_player.orchestrator import PlaybackOrchestrator
from sovits_player.request_builder import build_request
from sovits_player.session import PlaybackEvent, PlaybackState
from sovits_player.store import ParamsStore

logger = get_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sovits-player",
        description="Speak text through a local GPT-SoVITS server.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    speak = sub.add_parser("speak", help="synthesize and play text")
    src = speak.add_mutually_exclusive_group(required=True)
    src.add_argument("text", nargs="?", help="text to speak")
    src.add_argument("--file", type=Path, help="read the text from a UTF-8 file")
    speak.add_argument("--ref-audio", help="reference audio path on the server")
    speak.add_argument("--prompt-text", help="transcript of the reference audio")
    speak.add_argument(
        "--no-stream", action="store_true", help="download the whole WAV before playing"
    )

    synth = sub.add_parser("synthesize", help="write a synthesized WAV file")
    synth.add_argument("text")
    synth.add_argument("-o", "--output", type=Path, required=True)
    synth.add_argument("--ref-audio")
    synth.add_argument("--prompt-text")

    sub.add_parser("probe", help="check that the speech server is reachable")

    params = sub.add_parser("params", help="show or change stored parameters")
    params_sub = params.add_subparsers(dest="params_command", required=True)
    params_sub.add_parser("show")
    set_cmd = params_sub.add_parser("set")
    set_cmd.add_argument("assignments", nargs="*", metavar="KEY=VALUE")
    set_cmd.add_argument("--ref-audio")
    set_cmd.add_argument("--prompt-text")

    return parser


def _parse_assignments(items: Sequence[str]) -> dict[str, Any]:
    """``top_k=10 split_bucket=false`` -> ``{"top_k": 10, "split_bucket": False}``."""
    out: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {item!r}")
        try:
            out[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            out[key.strip()] = raw
    return out


async def _speak(settings: Settings, args: argparse.Namespace) -> int:
    store = ParamsStore.from_settings(settings)
    prefs = store.load()
    text = args.file.read_text(encoding="utf-8") if args.file else args.text

    ref_audio = args.ref_audio or prefs.reference_audio_path
    if not ref_audio:
        logger.error("No reference audio configured; pass --ref-audio or run 'params set --ref-audio'")
        return 2
    prompt_text = args.prompt_text if args.prompt_text is not None else prefs.prompt_text
    params = prefs.params
    if args.no_stream:
        params = params.model_copy(update={"streaming_mode": False})

    orchestrator = PlaybackOrchestrator(
        settings,
        SynthesisClient(settings),
        StreamingAudioPlayer.from_settings(settings),
    )

    failed = False

    def _report(event: PlaybackEvent) -> None:
        nonlocal failed
        if event.state is PlaybackState.ERROR:
            failed = True
            print(f"error: {event.error}", file=sys.stderr)

    orchestrator.subscribe(_report)
    try:
        await orchestrator.play(text, ref_audio, prompt_text, params)
        await orchestrator.wait_until_done()
    except SovitsError:
        return 1
    finally:
        await orchestrator.close()
    return 1 if failed else 0


async def _synthesize(settings: Settings, args: argparse.Namespace) -> int:
    prefs = ParamsStore.from_settings(settings).load()
    client = SynthesisClient(settings)
    try:
        request = build_request(
            args.text,
            args.ref_audio or prefs.reference_audio_path,
            args.prompt_text if args.prompt_text is not None else prefs.prompt_text,
            prefs.params,
            max_retries=settings.max_retries,
        )
        audio = await client.synthesize(request)
    except SovitsError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    args.output.write_bytes(audio)
    print(f"wrote {len(audio)} bytes to {args.output}")
    return 0


async def _probe(settings: Settings) -> int:
    client = SynthesisClient(settings)
    try:
        await client.probe_availability()
    except SovitsError as exc:
        print(f"unavailable: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    print(f"available: {settings.sovits_base_url}")
    return 0


def _params(settings: Settings, args: argparse.Namespace) -> int:
    store = ParamsStore.from_settings(settings)
    if args.params_command == "set":
        try:
            prefs = store.update(
                reference_audio_path=args.ref_audio,
                prompt_text=args.prompt_text,
                params=_parse_assignments(args.assignments),
            )
        except (ValueError, SovitsError) as exc:
            print(f"error: {getattr(exc, 'message', exc)}", file=sys.stderr)
            return 1
    else:
        prefs = store.load()
    print(json.dumps(prefs.model_dump(mode="json"), ensure_ascii=False, indent=2))
    return 0


async def run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "speak":
        return await _speak(settings, args)
    if args.command == "synthesize":
        return await _synthesize(settings, args)
    if args.command == "probe":
        return await _probe(settings)
    return _params(settings, args)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted; playback stopped")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
