"""Analysis orchestration: prompts, generation, the operation state machine and retry queue.

Submodules are imported directly (``from validate_strategy.core.analysis.orchestrator
import AnalysisOrchestrator``) to keep import order free of cycles.
"""
