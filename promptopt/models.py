# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Data models for the prompt optimization system."""
import time
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from promptopt.blocks import compose_prompt


# =====================================================================
# Tasks and generated output
# =====================================================================

class Task(BaseModel):
    """One evaluation unit: a work item the prompt must decompose."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str
    personas: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    def spec_text(self) -> str:
        """Render the task as the text sent to the generator."""
        lines = []
        if self.title:
            lines.append("# {}".format(self.title))
        lines.append(self.description.strip())
        if self.personas:
            lines.append("")
            lines.append("Personas: {}".format(", ".join(self.personas)))
        if self.constraints:
            lines.append("")
            lines.append("Constraints:")
            lines.extend("- {}".format(c) for c in self.constraints)
        return "\n".join(lines)


class Story(BaseModel):
    """A single user story in a generated decomposition."""

    title: str = Field(min_length=1)
    as_a: str
    i_want: str
    so_that: str
    acceptance_criteria: List[str] = Field(min_length=1)


class StoryPack(BaseModel):
    """Structured output of one generation: stories plus metadata."""

    task_id: str = ""
    stories: List[Story] = Field(min_length=1)
    assumptions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    follow_ups: List[str] = Field(default_factory=list)


class GenerationSuccess(BaseModel):
    kind: Literal["ok"] = "ok"
    output: StoryPack
    raw_text: str = ""


class GenerationFailure(BaseModel):
    kind: Literal["error"] = "error"
    error: str
    raw_text: str = ""


GenerationOutcome = Annotated[
    Union[GenerationSuccess, GenerationFailure],
    Field(discriminator="kind"),
]


class Subscores(BaseModel):
    """Optional per-metric subscores reported by the scorer."""

    coverage: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    structural_completeness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    criteria_quality: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    duplication: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ScoreResult(BaseModel):
    """What the external scorer returns for one output."""

    score: float = Field(ge=0.0, le=1.0)
    passed: bool
    gate_decision: Optional[str] = None
    subscores: Optional[Subscores] = None


# =====================================================================
# Distributional evaluation
# =====================================================================

class GenerationRun(BaseModel):
    """One stochastic generation + score for a (task, seed)."""

    task_id: str
    seed: int
    score: float = 0.0
    passed: bool = False
    output: Optional[StoryPack] = None
    raw_text: str = ""
    error: Optional[str] = None
    gate_decision: Optional[str] = None
    subscores: Optional[Subscores] = None


class TaskReport(BaseModel):
    """Aggregated replicate runs for one task."""

    task_id: str
    runs: List[GenerationRun] = Field(default_factory=list)
    pass_rate: float = 0.0
    mean_score: float = 0.0
    p10_score: float = 0.0
    std_score: float = 0.0
    discoverability_k: float = 0.0


class AggregateStats(BaseModel):
    mean_pass_rate: float = 0.0
    mean_of_means: float = 0.0
    mean_p10: float = 0.0
    mean_std: float = 0.0
    objective: float = 0.0


class DistributionReport(BaseModel):
    """Aggregate across all tasks for one prompt."""

    per_task: List[TaskReport] = Field(default_factory=list)
    agg: AggregateStats = Field(default_factory=AggregateStats)

    @property
    def total_runs(self) -> int:
        return sum(len(t.runs) for t in self.per_task)


# =====================================================================
# Contrastive pairs
# =====================================================================

class QualityTier(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ContrastPair(BaseModel):
    """Two runs of the same task with similar text and different quality."""

    task_id: str
    sim: float
    delta: float
    good: GenerationRun
    bad: GenerationRun
    tier: Optional[QualityTier] = None
    primary_metric: Optional[str] = None
    error_analysis: Optional[List[str]] = None


# =====================================================================
# Tournament
# =====================================================================

class Candidate(BaseModel):
    """A patch proposal under evaluation."""

    id: str
    patch: str
    prompt_text: str
    objective: float = 0.0
    pass_rate: float = 0.0
    schema_valid: bool = False
    delta_vs_champion: float = 0.0
    r_eff: Optional[float] = None  # external reliability score, NQD axis
    mutation_id: Optional[str] = None
    mutation_type: Optional[str] = None
    error: Optional[str] = None


class CreativityProfile(BaseModel):
    novelty: float = 1.0
    use_value: float = 0.0
    surprise: float = 0.0
    constraint_fit: float = 0.0
    diversity: float = 1.0


class GateResult(BaseModel):
    """Outcome of the eligibility gate for one candidate."""

    profile: CreativityProfile
    eligible: bool
    reason: str = ""
    warnings: List[str] = Field(default_factory=list)


class ArchiveEntry(BaseModel):
    candidate: Candidate
    gate: GateResult
    r_eff: float = 0.0

    @property
    def use_value(self) -> float:
        return self.gate.profile.use_value


class ParetoStats(BaseModel):
    total: int = 0
    eligible: int = 0
    ineligible: int = 0
    front_size: int = 0
    dominated: int = 0
    pruned: int = 0


class ParetoFront(BaseModel):
    """Partition of candidates by eligibility and dominance."""

    front: List[ArchiveEntry] = Field(default_factory=list)
    dominated: List[ArchiveEntry] = Field(default_factory=list)
    ineligible: List[ArchiveEntry] = Field(default_factory=list)
    stats: ParetoStats = Field(default_factory=ParetoStats)


class IlluminationTelemetry(BaseModel):
    """Descriptive statistics of the search space. Never affects selection."""

    coverage: float = 0.0
    qd_score: float = 0.0
    avg_novelty: float = 0.0
    avg_diversity: float = 0.0
    objective_spread: float = 0.0
    front_size: int = 0
    eligible_count: int = 0
    total_candidates: int = 0


class NQDArchive(BaseModel):
    pareto_front: ParetoFront = Field(default_factory=ParetoFront)
    illumination: IlluminationTelemetry = Field(default_factory=IlluminationTelemetry)
    selected_winner: Optional[ArchiveEntry] = None
    timestamp: float = Field(default_factory=time.time)


class TournamentResult(BaseModel):
    mode: str = "simple"  # simple, nqd
    ranked: List[Candidate] = Field(default_factory=list)
    winner: Optional[Candidate] = None
    archive: Optional[NQDArchive] = None
    nqd_changed_winner: bool = False


# =====================================================================
# Meta-evolution
# =====================================================================

class MutationType(str, Enum):
    DIRECT_MUTATION = "DIRECT_MUTATION"
    EDA_MUTATION = "EDA_MUTATION"
    HYPERMUTATION = "HYPERMUTATION"
    LAMARCKIAN = "LAMARCKIAN"
    CROSSOVER = "CROSSOVER"
    ZERO_ORDER_HYPER = "ZERO_ORDER_HYPER"


class MutationPrompt(BaseModel):
    """A meta-evolution operator: a prompt that produces prompt patches."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    type: MutationType
    fitness: float = Field(default=0.5, ge=0.0, le=1.0)
    success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    usage_count: int = 0
    generation: int = 0
    parent_id: Optional[str] = None


# =====================================================================
# Loop state
# =====================================================================

class ChampionPrompt(BaseModel):
    """Current best prompt: immutable base plus the evolved patch."""

    base: str
    patch: str = ""

    def composed(self) -> str:
        return compose_prompt(self.base, self.patch)


class IterationResult(BaseModel):
    """Outcome of one optimization iteration."""

    iteration: int
    pairs_found: int = 0
    candidates_generated: int = 0
    best_candidate_id: str = ""
    best_candidate_objective: float = 0.0
    best_candidate_patch: str = ""
    champion_objective: float = 0.0
    promoted: bool = False
    duration_s: float = 0.0
    error: Optional[str] = None

    # NQD telemetry
    selection_mode: str = "simple"
    pareto_front_size: Optional[int] = None
    illumination: Optional[IlluminationTelemetry] = None
    nqd_changed_winner: Optional[bool] = None

    # Meta-evolution telemetry
    mutations_used: List[str] = Field(default_factory=list)
    best_mutation_type: Optional[str] = None
    hypermutation_applied: bool = False


class OptimizationState(BaseModel):
    """Full, checkpointable loop state."""

    session_id: str
    iteration: int = 0
    max_iterations: int = 10
    champion: ChampionPrompt
    champion_objective: float = 0.0
    baseline_objective: Optional[float] = None
    should_continue: bool = True
    status: str = "running"  # running, completed, failed
    history: List[IterationResult] = Field(default_factory=list)
    mutation_prompts: Optional[List[MutationPrompt]] = None
    started_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None
    last_error: Optional[str] = None
