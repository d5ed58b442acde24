"""Configuration management using pydantic-settings."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bisub.exceptions import ConfigurationError

_ENV_FILES = (".env", "../.env", "../../.env")

_REPO_ROOT = Path(__file__).resolve().parents[3]

ModelTier = Literal["fast", "power"]


def _resolve_repo_path(value: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        return raw
    p = Path(raw)
    if p.is_absolute():
        return str(p)
    return str((_REPO_ROOT / p).resolve())


class ASRConfig(BaseSettings):
    """Transcription provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ASR_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: str = "openai_whisper"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "whisper-1"
    timeout: float = 600.0  # 单个请求超时（秒）


class LLMProfileConfig(BaseSettings):
    """Model tier configuration (used for fast/power)."""

    provider: str = "gemini"
    base_url: str | None = None
    api_key: str = ""
    model: str = "gemini-2.5-flash"


class LLMFastConfig(LLMProfileConfig):
    model_config = SettingsConfigDict(
        env_prefix="LLM_FAST_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LLMPowerConfig(LLMProfileConfig):
    model_config = SettingsConfigDict(
        env_prefix="LLM_POWER_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    model: str = "gemini-2.5-pro"


class LLMLimitsConfig(BaseSettings):
    """LLM limits (not tied to any provider/profile)."""

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_output_tokens: int = Field(default=65536, ge=256)
    request_timeout_s: float = Field(default=600.0, gt=0)
    temperature: float = Field(default=0.3, ge=0)
    max_continuations: int = Field(
        default=3,
        ge=0,
        description="How many times a truncated JSON answer is continued before giving up.",
    )


class ConcurrencyConfig(BaseSettings):
    """Global concurrency limits by service type."""

    model_config = SettingsConfigDict(
        env_prefix="CONCURRENCY_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    asr: int = Field(default=5, ge=1)
    llm_fast: int = Field(default=5, ge=1)
    llm_power: int = Field(default=2, ge=1)
    chunks: int = Field(default=20, ge=1, description="Outer fan-out of chunk workers.")


class RetryConfig(BaseSettings):
    """Backoff for transient provider errors."""

    model_config = SettingsConfigDict(
        env_prefix="RETRY_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=2.0, ge=0)
    max_jitter_s: float = Field(default=1.0, ge=0)
    glossary_base_delay_s: float = Field(default=1.0, ge=0)
    glossary_max_jitter_s: float = Field(default=0.5, ge=0)


class GenerationConfig(BaseSettings):
    """Subtitle generation and batch editing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GENERATION_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    chunk_duration_s: float = Field(default=300.0, gt=0)
    smart_split: bool = True
    translation_batch_size: int = Field(default=20, ge=1)
    proofread_batch_size: int = Field(default=20, ge=1)

    genre: str = "general"
    source_language: str | None = None
    target_language: str = "Simplified Chinese"
    custom_refinement_prompt: str = ""
    custom_translation_prompt: str = ""
    custom_proofread_prompt: str = ""

    enable_glossary: bool = True
    glossary_sample_minutes: float | None = Field(
        default=None,
        gt=0,
        description="Only sample the first N minutes for glossary extraction (None = all).",
    )

    chunk_failure_policy: Literal["abort", "skip"] = "abort"

    refine_max_segment_s: float = Field(default=4.0, gt=0)
    refine_max_segment_chars: int = Field(default=25, ge=1)


class TimestampConfig(BaseSettings):
    """Heuristics for repairing model-written timestamps."""

    model_config = SettingsConfigDict(
        env_prefix="TIMESTAMP_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    unit_shift_buffer_s: float = Field(default=30.0, ge=0)
    unit_shift_ms_scale: int = Field(default=10, ge=1)
    drop_beyond_media_s: float = Field(default=10.0, ge=0)


class AudioConfig(BaseSettings):
    """Audio processing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUDIO_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ffmpeg_bin: str = "ffmpeg"
    sample_rate: int = Field(default=16000, ge=8000)
    context_padding_s: float = Field(default=5.0, ge=0)

    silence_noise_db: float = -35.0
    silence_min_duration_s: float = Field(default=0.5, gt=0)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"
    console: bool = True
    file: str | None = None
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=0)
    backup_count: int = Field(default=5, ge=0)
    # Third-party loggers capped at WARNING.
    quiet_loggers: list[str] = Field(default_factory=lambda: ["httpx", "httpcore", "google"])


class AcceptanceCriteria(BaseModel):
    max_high_severity_issues: int = Field(default=0, ge=0)
    max_medium_low_issues_per_minute: float = Field(default=1.0, ge=0)


class QualityControlConfig(BaseModel):
    """Per-run quality control settings (Review -> Fix -> Validate)."""

    review_tier: ModelTier = "power"
    fix_tier: ModelTier = "power"
    validate_tier: ModelTier = "power"
    max_iterations: int = Field(default=3, ge=1)
    acceptance_criteria: AcceptanceCriteria = AcceptanceCriteria()
    run_ai_consistency_check: bool = True


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILES, env_file_encoding="utf-8", extra="ignore"
    )

    data_dir: str = "./data"
    log_dir: str = "./logs"

    # Transcription
    asr: ASRConfig = ASRConfig()

    # LLM
    llm_limits: LLMLimitsConfig = LLMLimitsConfig()
    llm_fast: LLMFastConfig = LLMFastConfig()
    llm_power: LLMPowerConfig = LLMPowerConfig()

    # Concurrency (service-level)
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    retry: RetryConfig = RetryConfig()

    generation: GenerationConfig = GenerationConfig()
    timestamps: TimestampConfig = TimestampConfig()
    audio: AudioConfig = AudioConfig()

    # Logging
    logging: LoggingSettings = LoggingSettings()

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        # Scripts may run from any CWD; keep paths stable.
        self.data_dir = _resolve_repo_path(self.data_dir)
        self.log_dir = _resolve_repo_path(self.log_dir)
        return self

    def model_post_init(self, __context: Any) -> None:
        for attr in ("data_dir", "log_dir"):
            Path(getattr(self, attr)).mkdir(parents=True, exist_ok=True)

    def concurrency_for(self, tier: str) -> int:
        """Return the in-flight call cap for a model tier."""
        name = str(tier or "").strip().lower()
        if name == "power":
            return int(self.concurrency.llm_power)
        return int(self.concurrency.llm_fast)

    def llm_config_for(self, tier: str) -> dict[str, Any]:
        """Return an LLM config dict for provider registry."""
        name = str(tier or "").strip().lower()
        if name in {"", "fast"}:
            cfg = self.llm_fast.model_dump()
        elif name == "power":
            cfg = self.llm_power.model_dump()
        else:
            raise ConfigurationError(f"Unknown LLM tier: {tier!r} (expected: fast/power)")

        provider = str(cfg.get("provider") or "").strip().lower()
        if not provider:
            raise ConfigurationError(f"LLM tier {name!r} is not configured (missing provider)")

        # `base_url` is optional (provider-specific):
        # - openai/openai_compat: default to OpenAI public endpoint
        # - gemini: optional API endpoint override
        base_url = str(cfg.get("base_url") or "").strip()
        if provider in {"openai", "openai_compat"}:
            cfg["base_url"] = base_url or "https://api.openai.com/v1"
        elif base_url:
            cfg["base_url"] = base_url
        else:
            cfg.pop("base_url", None)
        cfg["timeout"] = float(self.llm_limits.request_timeout_s)
        return cfg
