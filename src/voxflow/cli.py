"""
Command-Line Interface for voxflow.

Synthesizes one text to a WAV file from a directory of exported models,
or runs the tokenizer alone as a dry run.

Usage Examples:
    # Synthesize with the default speaker
    voxflow --text "Hello there." --out hello.wav

    # Positional text (same as above)
    voxflow "Hello there." --out hello.wav

    # Clone a voice from a reference recording and its transcript
    voxflow "Hello there." --prompt-wav ref.wav --prompt-text "This is me talking."

    # Tokenizer-only dry run
    voxflow --text "Hello" --tokenize --json

Environment Variables:
    VOXFLOW_SETTINGS: Settings file used when --config is not given
    VOXFLOW_MODELS_DIR: Override models.dir
    VOXFLOW_SEED: Override generation.seed
    VOXFLOW_LOG_LEVEL: Log level (1-4 or name)
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from voxflow.core.config import ConfigValidationError, Settings, apply_env_overrides, load_settings
from voxflow.core.errors import VoxflowError
from voxflow.core.logging import LogLevel, configure_logging, error, get_logger, info, set_request_id

DEFAULT_SETTINGS_PATH = "config/settings.yaml"


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(prog="voxflow", description="voxflow CLI (offline text-to-speech)")

    # Input
    parser.add_argument("text_pos", nargs="?", help="Text to synthesize (positional)")
    parser.add_argument("--text", help="Text to synthesize")

    # Output
    parser.add_argument("--out", help="Output WAV path (default: out.wav)")

    # Locations
    parser.add_argument("--config", help=f"Settings YAML (default: {DEFAULT_SETTINGS_PATH} if present)")
    parser.add_argument("--models-dir", help="Directory with the exported ONNX models")
    parser.add_argument("--vocab", help="Path to vocab.json (default: <models-dir>/vocab.json)")
    parser.add_argument("--merges", help="Path to merges.txt (default: <models-dir>/merges.txt)")

    # Voice prompt
    parser.add_argument("--prompt-wav", help="Reference recording for voice cloning")
    parser.add_argument("--prompt-text", help="Transcript of the reference recording")

    # Generation overrides
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--max-tokens", type=int, help="Maximum speech tokens")
    parser.add_argument("--min-tokens", type=int, help="Minimum speech tokens before EOS")
    parser.add_argument("--top-k", type=int, help="Top-k sampling width")

    # Execution modes
    parser.add_argument("--tokenize", action="store_true",
                        help="Only tokenize the text and print the ids")
    parser.add_argument("--json", action="store_true",
                        help="Print JSON summary")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Raise log verbosity (-v VERBOSE, -vv DEBUG)")

    return parser.parse_args(argv)


def _resolve_text(args: argparse.Namespace) -> str:
    text = args.text or args.text_pos
    if not text:
        raise SystemExit("Provide --text or a positional text.")
    return text


def _load_settings(args: argparse.Namespace) -> Settings:
    """
    Load settings from --config, $VOXFLOW_SETTINGS or the default path.

    A missing default file is not an error: built-in defaults apply.
    Explicit paths must exist.
    """
    path = args.config or os.getenv("VOXFLOW_SETTINGS")
    if path:
        settings = load_settings(path)
    elif Path(DEFAULT_SETTINGS_PATH).exists():
        settings = load_settings(DEFAULT_SETTINGS_PATH)
    else:
        settings = Settings(raw=apply_env_overrides({}))

    raw: Dict[str, Any] = dict(settings.raw)
    if args.models_dir:
        raw.setdefault("models", {})["dir"] = args.models_dir
    if args.vocab:
        raw.setdefault("tokenizer", {})["vocab_path"] = args.vocab
    if args.merges:
        raw.setdefault("tokenizer", {})["merges_path"] = args.merges

    gen_overrides = {
        "seed": args.seed,
        "max_tokens": args.max_tokens,
        "min_tokens": args.min_tokens,
        "sampling_k": args.top_k,
    }
    for key, value in gen_overrides.items():
        if value is not None:
            raw.setdefault("generation", {})[key] = value
    return Settings(raw=raw)


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False))
    else:
        print(payload)


def _tokenize_only(text: str, settings: Settings, as_json: bool) -> int:
    from voxflow.text.tokenizer import ByteLevelBPETokenizer

    config = settings.get_pipeline_config()
    vocab_path, merges_path = config.tokenizer.resolve(config.models.models_dir)
    tokenizer = ByteLevelBPETokenizer()
    tokenizer.load(vocab_path, merges_path)
    ids = tokenizer.encode(text)

    _emit({"ok": True, "dry_run": True, "text_len": len(text), "count": len(ids), "tokens": ids}, as_json)
    print("DRY_RUN_OK")
    return 0


def _synthesize(text: str, settings: Settings, args: argparse.Namespace) -> int:
    from voxflow.core.config import Defaults
    from voxflow.services.synthesis import SynthesisPipeline
    from voxflow.utils.audio import read_wav, resample_linear

    log = get_logger("voxflow.cli")
    config = settings.get_pipeline_config()
    out_path = Path(args.out or "out.wav")
    out_path.parent.mkdir(parents=True, exist_ok=True)

    with SynthesisPipeline.load(config, include_prompt=bool(args.prompt_wav)) as pipeline:
        info(log, "synth_start", chars=len(text), out=str(out_path), prompt=bool(args.prompt_wav))
        if args.prompt_wav:
            audio, sr = read_wav(args.prompt_wav)
            audio_16k = resample_linear(audio, sr, Defaults.PROMPT_SAMPLE_RATE)
            audio_24k = resample_linear(audio, sr, Defaults.VOCODER_SAMPLE_RATE)
            result = pipeline.synthesize_with_prompt(text, args.prompt_text, audio_16k, audio_24k)
        else:
            result = pipeline.synthesize(text)

    wav_bytes = result.to_wav_bytes()
    out_path.write_bytes(wav_bytes)

    _emit({
        "ok": True,
        "dry_run": False,
        "out": str(out_path),
        "bytes": len(wav_bytes),
        "sample_rate": result.sample_rate,
        "speech_tokens": len(result.speech_tokens),
        "seconds": round(result.duration_seconds, 3),
        "timings": {k: round(v, 4) for k, v in result.timings.items()},
        "used_prompt": result.used_prompt,
    }, args.json)
    print("CLI_OK")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, 1 for pipeline or configuration errors).
    """
    args = _parse_args(argv)
    level = None
    if args.verbose:
        level = LogLevel.VERBOSE if args.verbose == 1 else LogLevel.DEBUG
    configure_logging(level)
    log = get_logger("voxflow.cli")
    set_request_id(uuid4().hex[:12])

    text = _resolve_text(args)
    try:
        settings = _load_settings(args)
        if args.tokenize:
            return _tokenize_only(text, settings, args.json)
        return _synthesize(text, settings, args)
    except VoxflowError as e:
        error(log, "cli_failed", code=e.code, message=e.message)
        _emit(e.to_dict(), args.json)
        return 1
    except (ConfigValidationError, FileNotFoundError) as e:
        error(log, "cli_config_failed", message=str(e))
        _emit({"ok": False, "error": "CONFIG_ERROR", "message": str(e)}, args.json)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
