"""
Configuration Management for voxflow.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (VOXFLOW_MODELS_DIR, VOXFLOW_SEED, ...)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    models:
      dir: models
      providers: [CPUExecutionProvider]

    generation:
      max_tokens: 500
      min_tokens: 10
      sampling_k: 25
      seed: 1234

    flow:
      num_steps: 10

    logging:
      level: 2  # NORMAL
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import yaml


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    This exception is thrown when a configuration value is outside
    acceptable bounds or of the wrong type.
    """
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Tokenizer: Vocabulary and merge table file names
        - Generation: Autoregressive decoding limits and special ids
        - Flow: Euler integration and mel layout
        - Vocoder: Output sample rate and clipping
        - Models: Collaborator model directory and providers
        - Logging: Log level and formatting
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Tokenizer
    # ─────────────────────────────────────────────────────────────────────────
    TOKENIZER_VOCAB_FILE = "vocab.json"     # {token: id} JSON map
    TOKENIZER_MERGES_FILE = "merges.txt"    # One merge per line, rank = order

    # ─────────────────────────────────────────────────────────────────────────
    # Generation (autoregressive decoder)
    # ─────────────────────────────────────────────────────────────────────────
    GENERATION_MAX_TOKENS = 500             # Hard ceiling on speech tokens
    GENERATION_MIN_TOKENS = 10              # EOS ignored before this many
    GENERATION_SAMPLING_K = 25              # Top-k candidate count
    GENERATION_MIN_TOKENS_PER_TEXT = 2      # min' = max(min, 2 * text tokens)
    GENERATION_MAX_TOKENS_PER_TEXT = 20     # max' = min(max, 20 * text tokens)
    GENERATION_MAX_TOKENS_FLOOR = 10        # Lowest accepted max_tokens
    GENERATION_SEED: Optional[int] = None   # None = fresh entropy per request

    SOS_TOKEN = 6561                        # Start-of-sequence speech id
    EOS_TOKEN = 6562                        # End-of-sequence speech id
    TASK_TOKEN = 6563                       # Task separator speech id
    SPEECH_VOCAB_SIZE = 6761                # Decoder logit width

    # ─────────────────────────────────────────────────────────────────────────
    # Flow synthesis
    # ─────────────────────────────────────────────────────────────────────────
    FLOW_NUM_STEPS = 10                     # Fixed Euler steps
    FLOW_TOKEN_MEL_RATIO = 2                # Mel frames per speech token
    FLOW_MEL_CHANNELS = 80                  # Mel bins
    SPEAKER_EMBEDDING_DIM = 192             # Speaker encoder output size
    DEFAULT_SPEAKER_SEED = 42               # Seed for the built-in speaker

    # ─────────────────────────────────────────────────────────────────────────
    # Vocoder
    # ─────────────────────────────────────────────────────────────────────────
    VOCODER_SAMPLE_RATE = 24000             # Output waveform rate
    VOCODER_AUDIO_LIMIT = 0.99              # Hard clip bound
    PROMPT_SAMPLE_RATE = 16000              # Prompt encoder input rate

    # ─────────────────────────────────────────────────────────────────────────
    # Models
    # ─────────────────────────────────────────────────────────────────────────
    MODELS_DIR = "models"
    MODELS_PROVIDERS = ["CPUExecutionProvider"]

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 80     # Characters to show in text preview
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


@dataclass
class TokenizerConfig:
    """
    Tokenizer file locations.

    Empty paths resolve against the models directory.
    """
    vocab_path: str = ""
    merges_path: str = ""

    def resolve(self, models_dir: str) -> tuple[Path, Path]:
        """Return (vocab, merges) paths, defaulting into ``models_dir``."""
        base = Path(models_dir)
        vocab = Path(self.vocab_path) if self.vocab_path else base / Defaults.TOKENIZER_VOCAB_FILE
        merges = Path(self.merges_path) if self.merges_path else base / Defaults.TOKENIZER_MERGES_FILE
        return vocab, merges


@dataclass
class GenerationConfig:
    """
    Autoregressive decoding parameters.

    Attributes:
        max_tokens: Upper bound on generated speech tokens (>= 10).
        min_tokens: Tokens that must be generated before EOS is honoured.
        sampling_k: Top-k candidate count.
        seed: Base seed for the per-request generator (None = entropy).
    """
    max_tokens: int = Defaults.GENERATION_MAX_TOKENS
    min_tokens: int = Defaults.GENERATION_MIN_TOKENS
    sampling_k: int = Defaults.GENERATION_SAMPLING_K
    seed: Optional[int] = Defaults.GENERATION_SEED


@dataclass
class FlowConfig:
    """Flow-matching synthesis parameters."""
    num_steps: int = Defaults.FLOW_NUM_STEPS


@dataclass
class VocoderConfig:
    """Vocoder output parameters."""
    sample_rate: int = Defaults.VOCODER_SAMPLE_RATE
    audio_limit: float = Defaults.VOCODER_AUDIO_LIMIT


@dataclass
class ModelsConfig:
    """
    Collaborator model locations.

    Attributes:
        models_dir: Directory holding the exported ONNX graphs and tokenizer files.
        providers: ONNX Runtime execution providers, in priority order.
    """
    models_dir: str = Defaults.MODELS_DIR
    providers: List[str] = field(default_factory=lambda: list(Defaults.MODELS_PROVIDERS))


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Attributes:
        level: Numeric log level (1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG).
        text_preview_chars: Characters of input text echoed in log lines.
    """
    level: int = Defaults.LOGGING_LEVEL
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS


@dataclass
class PipelineConfig:
    """
    Complete, validated pipeline configuration.

    Aggregates every section. Use from_settings() to build one from a
    Settings object; the bare constructor yields all defaults.
    """
    tokenizer: TokenizerConfig = field(default_factory=TokenizerConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    vocoder: VocoderConfig = field(default_factory=VocoderConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PipelineConfig":
        """
        Build a validated PipelineConfig from raw settings.

        Missing sections and keys fall back to Defaults.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Tokenizer
        # ─────────────────────────────────────────────────────────────────────
        tok_raw = raw.get("tokenizer", {}) or {}
        tokenizer = TokenizerConfig(
            vocab_path=str(tok_raw.get("vocab_path", "") or ""),
            merges_path=str(tok_raw.get("merges_path", "") or ""),
        )

        # ─────────────────────────────────────────────────────────────────────
        # Generation
        # ─────────────────────────────────────────────────────────────────────
        gen_raw = raw.get("generation", {}) or {}
        seed_raw = gen_raw.get("seed", Defaults.GENERATION_SEED)
        generation = GenerationConfig(
            max_tokens=int(gen_raw.get("max_tokens", Defaults.GENERATION_MAX_TOKENS)),
            min_tokens=int(gen_raw.get("min_tokens", Defaults.GENERATION_MIN_TOKENS)),
            sampling_k=int(gen_raw.get("sampling_k", Defaults.GENERATION_SAMPLING_K)),
            seed=None if seed_raw is None else int(seed_raw),
        )
        cls._validate_at_least("generation.max_tokens", generation.max_tokens,
                               Defaults.GENERATION_MAX_TOKENS_FLOOR)
        cls._validate_positive("generation.min_tokens", generation.min_tokens)
        cls._validate_positive("generation.sampling_k", generation.sampling_k)
        if generation.seed is not None:
            cls._validate_non_negative("generation.seed", generation.seed)

        # ─────────────────────────────────────────────────────────────────────
        # Flow
        # ─────────────────────────────────────────────────────────────────────
        flow_raw = raw.get("flow", {}) or {}
        flow = FlowConfig(num_steps=int(flow_raw.get("num_steps", Defaults.FLOW_NUM_STEPS)))
        cls._validate_positive("flow.num_steps", flow.num_steps)

        # ─────────────────────────────────────────────────────────────────────
        # Vocoder
        # ─────────────────────────────────────────────────────────────────────
        voc_raw = raw.get("vocoder", {}) or {}
        vocoder = VocoderConfig(
            sample_rate=int(voc_raw.get("sample_rate", Defaults.VOCODER_SAMPLE_RATE)),
            audio_limit=float(voc_raw.get("audio_limit", Defaults.VOCODER_AUDIO_LIMIT)),
        )
        cls._validate_positive("vocoder.sample_rate", vocoder.sample_rate)
        cls._validate_range("vocoder.audio_limit", vocoder.audio_limit, 0.0, 1.0)

        # ─────────────────────────────────────────────────────────────────────
        # Models
        # ─────────────────────────────────────────────────────────────────────
        models_raw = raw.get("models", {}) or {}
        providers = models_raw.get("providers", Defaults.MODELS_PROVIDERS)
        if isinstance(providers, str):
            providers = [providers]
        models = ModelsConfig(
            models_dir=str(models_raw.get("dir", Defaults.MODELS_DIR)),
            providers=[str(p) for p in providers],
        )
        if not models.providers:
            raise ConfigValidationError("models.providers must not be empty")

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)

        # Handle string log levels (e.g., "INFO", "DEBUG")
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)

        logging_cfg = LoggingConfig(
            level=log_level,
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
        )
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)

        return cls(
            tokenizer=tokenizer,
            generation=generation,
            flow=flow,
            vocoder=vocoder,
            models=models,
            logging=logging_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_at_least(name: str, value: int | float, min_val: int | float) -> None:
        """Validate that a value is at least ``min_val``."""
        if value < min_val:
            raise ConfigValidationError(f"{name} must be at least {min_val}, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within a range [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_pipeline_config() to get a validated PipelineConfig.

    Attributes:
        raw: Dictionary of raw configuration values.
    """
    raw: Dict[str, Any]

    def get_pipeline_config(self) -> PipelineConfig:
        """
        Get validated PipelineConfig from these settings.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return PipelineConfig.from_settings(self)


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML configuration file.

    Environment variable overrides:
        - VOXFLOW_MODELS_DIR: Override models.dir
        - VOXFLOW_SEED: Override generation.seed

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Settings object with loaded configuration.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
        ConfigValidationError: If VOXFLOW_SEED is not an integer.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=apply_env_overrides(raw))


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Apply VOXFLOW_* environment overrides to a raw settings dict (in place)."""
    models_dir = os.getenv("VOXFLOW_MODELS_DIR")
    if models_dir:
        raw.setdefault("models", {})["dir"] = models_dir

    seed = os.getenv("VOXFLOW_SEED")
    if seed:
        try:
            raw.setdefault("generation", {})["seed"] = int(seed)
        except ValueError:
            raise ConfigValidationError(f"VOXFLOW_SEED must be an integer, got {seed!r}") from None

    return raw
