"""Tiered assistant core package."""

from .config import BudgetConfig, OrchestratorConfig, RetrievalConfig, ScannerConfig

__all__ = ["BudgetConfig", "OrchestratorConfig", "RetrievalConfig", "ScannerConfig"]
