"""Activation flows."""

from .activation_flow import KeyActivationOrchestrator, build_orchestrator

__all__ = ["KeyActivationOrchestrator", "build_orchestrator"]
