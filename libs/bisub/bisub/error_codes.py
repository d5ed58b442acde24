"""Canonical error codes surfaced to callers."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    UNKNOWN = "UNKNOWN"
    CONFIG_INVALID = "CONFIG_INVALID"

    ASR_FAILED = "ASR_FAILED"
    LLM_FAILED = "LLM_FAILED"
    LLM_RATE_LIMITED = "LLM_RATE_LIMITED"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    PARSE_FAILED = "PARSE_FAILED"

    CHUNK_FAILED = "CHUNK_FAILED"
    CANCELLED = "CANCELLED"
