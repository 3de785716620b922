# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""promptopt: champion/challenger prompt optimization."""
from promptopt.config import LLMConfig, OptimizerConfig, load_config
from promptopt.evaluator import evaluate_distribution, evaluate_prompt, load_tasks
from promptopt.loop import OptimizationLoop, create_initial_state, resume_state
from promptopt.models import ChampionPrompt, OptimizationState, StoryPack, Task
from promptopt.service import OptimizationService
from promptopt.tournament import run_tournament

__version__ = "0.3.0"
__all__ = [
    "OptimizerConfig", "LLMConfig", "load_config",
    "evaluate_distribution", "evaluate_prompt", "load_tasks",
    "OptimizationLoop", "create_initial_state", "resume_state",
    "ChampionPrompt", "OptimizationState", "StoryPack", "Task",
    "OptimizationService", "run_tournament",
    "__version__",
]
