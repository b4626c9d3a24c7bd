"""Configuration models for the tiered assistant."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ScannerConfig(BaseModel):
    """Configures sanitization limits and risk scoring weights."""

    max_length: int = Field(default=2000, ge=1)
    risk_threshold: int = Field(default=12, ge=1)
    rule_weight: int = Field(default=10, ge=0)
    link_weight: int = Field(default=2, ge=0)
    link_cap: int = Field(default=10, ge=0)
    angle_cap: int = Field(default=10, ge=0)
    max_reasons: int = Field(default=6, ge=1)


class RetrievalConfig(BaseModel):
    """Configures BM25 ranking and the extractive drafter gate."""

    k1: float = Field(default=1.2, gt=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    top_k: int = Field(default=5, ge=1)
    max_passages: int = Field(default=4, ge=1)
    bm25_min: float = Field(default=0.6, ge=0.0)
    coverage_needed: int = Field(default=2, ge=1)
    overlap_min: float = Field(default=0.34, ge=0.0, le=1.0)
    corpus_path: str = "packs/site-pack.json"
    default_language: str = "en"


class BudgetConfig(BaseModel):
    """Configures session generation caps and per-tier reservations."""

    soft_cap: int = Field(default=75_000, ge=0)
    hard_cap: int = Field(default=100_000, ge=1)
    chars_per_unit: int = Field(default=4, ge=1)
    local_reserve: int = Field(default=500, ge=1)
    remote_reserve: int = Field(default=1000, ge=1)


class LocalModelConfig(BaseModel):
    """Configures the on-device generative tier."""

    model_identifier: str = "Llama-3.1-8B-Instruct-q4f16_1"
    max_context_passages: int = Field(default=4, ge=1)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)


class RemoteConfig(BaseModel):
    """Configures the remote streaming inference endpoint."""

    base_url: str = "http://127.0.0.1:8787"
    chat_path: str = "/api/chat"
    timeout_seconds: float = Field(default=300.0, gt=0.0)
    history_window: int = Field(default=16, ge=1)
    csrf_header: str = "X-CSRF"


class OrchestratorConfig(BaseModel):
    """Aggregates tier configuration for the resolution orchestrator."""

    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    local: LocalModelConfig = Field(default_factory=LocalModelConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    default_mode: str = "hybrid"
