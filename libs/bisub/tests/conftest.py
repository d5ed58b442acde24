from __future__ import annotations

import pytest

from bisub.config import Settings


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
        retry={
            "attempts": 3,
            "base_delay_s": 0.0,
            "max_jitter_s": 0.0,
            "glossary_base_delay_s": 0.0,
            "glossary_max_jitter_s": 0.0,
        },
        llm_fast={"provider": "openai", "api_key": "x", "model": "fast-model"},
        llm_power={"provider": "openai", "api_key": "x", "model": "power-model"},
    )
