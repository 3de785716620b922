# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Optimization loop: the champion/challenger state machine.

Flow per iteration:
  1. Evaluate the champion (distributional, seed base shifts per iteration)
  2. Mine contrastive pairs from the champion's runs
  3. Ask the patch proposer for candidate patches
  4. Tournament: evaluate every candidate, select a winner
  5. Promote the winner if it beats the champion by more than the threshold
  6. Meta-evolution: update operator fitness, maybe hypermutate
  7. Record the iteration and checkpoint

The base prompt is never rewritten; only the patch section changes.
Cancellation is checked at iteration boundaries, so an iteration in
flight always completes.
"""
import json
import logging
import random
import time
import uuid
from typing import List, Optional, Tuple

from promptopt.audit import IterationAuditEntry
from promptopt.blocks import clean_patch, compose_prompt
from promptopt.collaborators import Generator, OperatorRewriter, PatchProposer, Scorer
from promptopt.config import OptimizerConfig
from promptopt.errors import NoTasksError, PersistenceError
from promptopt.evaluator import best_run, evaluate_prompt, flatten_runs
from promptopt.meta import (
    RECENT_EXCLUSION, create_seed_population, hypermutate, record_usage,
    render_operator, select_mutation, update_fitness,
)
from promptopt.models import (
    Candidate, ChampionPrompt, DistributionReport, IterationResult,
    OptimizationState, Task,
)
from promptopt.pairs import (
    format_pairs_for_prompt, format_tiered_pairs_for_prompt,
    mine_contrastive_pairs, mine_tiered_pairs,
)
from promptopt.progress import EvalProgress, OptimizationStep, ProgressBus, ProgressEvent
from promptopt.store.tasks import CheckpointStore
from promptopt.tournament import run_tournament

logger = logging.getLogger(__name__)

# (patch, mutation_id, mutation_type)
Proposal = Tuple[str, Optional[str], Optional[str]]

_PROMOTION_EPS = 1e-9


def create_initial_state(
    base_prompt: str,
    patch: str = "",
    config: Optional[OptimizerConfig] = None,
    session_id: Optional[str] = None,
) -> OptimizationState:
    """Fresh loop state for a base prompt (and optional starting patch)."""
    config = config or OptimizerConfig()
    return OptimizationState(
        session_id=session_id or "opt-{}".format(uuid.uuid4().hex[:12]),
        max_iterations=config.max_iterations,
        champion=ChampionPrompt(base=base_prompt, patch=patch),
        mutation_prompts=create_seed_population() if config.meta_evolution else None,
    )


def resume_state(state: OptimizationState) -> OptimizationState:
    """Re-arm a checkpointed state. The loop continues at state.iteration."""
    return state.model_copy(update={
        "should_continue": True,
        "status": "running",
        "completed_at": None,
        "last_error": None,
    })


def should_promote(
    candidate_objective: float,
    champion_objective: float,
    threshold: float,
) -> bool:
    """Strictly greater than the threshold. Float noise at equality does not promote."""
    return (candidate_objective - champion_objective) - threshold > _PROMOTION_EPS


def _trailing_failures(history: List[IterationResult]) -> int:
    count = 0
    for result in reversed(history):
        if not result.error:
            break
        count += 1
    return count


class OptimizationLoop:
    """Runs the champion/challenger loop over an OptimizationState.

    Usage:
        loop = OptimizationLoop(config, tasks, generator, scorer, proposer)
        state = await loop.run(create_initial_state(base_prompt, config=config))
        print(state.champion.patch, state.champion_objective)
    """

    def __init__(
        self,
        config: OptimizerConfig,
        tasks: List[Task],
        generator: Generator,
        scorer: Scorer,
        proposer: PatchProposer,
        rewriter: Optional[OperatorRewriter] = None,
        checkpoints: Optional[CheckpointStore] = None,
        bus: Optional[ProgressBus] = None,
        rng: Optional[random.Random] = None,
    ):
        self._config = config
        self._tasks = list(tasks)
        self._generator = generator
        self._scorer = scorer
        self._proposer = proposer
        self._rewriter = rewriter
        self._checkpoints = checkpoints
        self._bus = bus
        self._rng = rng or random.Random()
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop after the current iteration."""
        self._stop_requested = True

    async def run(self, state: OptimizationState) -> OptimizationState:
        """Iterate until max_iterations, convergence, stop or failure.

        NoTasksError and PersistenceError propagate after the state is
        marked failed.
        """
        state.status = "running"
        if self._config.meta_evolution and state.mutation_prompts is None:
            state.mutation_prompts = create_seed_population()
        consecutive_failures = _trailing_failures(state.history)

        await self._emit(state, OptimizationStep.INITIALIZING)
        try:
            if not self._tasks:
                raise NoTasksError("No tasks to optimize against")

            while (
                state.iteration < state.max_iterations
                and state.should_continue
                and not self._stop_requested
            ):
                result = await self.run_iteration(state)
                if result.error:
                    state.last_error = result.error

                await self._emit(state, OptimizationStep.CHECKPOINTING)
                if self._checkpoints is not None:
                    await self._checkpoints.save(state)
                await self._emit(state, OptimizationStep.CHECKPOINTING, kind="iteration", result=result)
                IterationAuditEntry.from_result(state.session_id, result).emit()

                if result.error:
                    consecutive_failures += 1
                    if consecutive_failures >= self._config.max_consecutive_failures:
                        logger.warning(
                            "Stopping: %d consecutive failed iterations", consecutive_failures,
                        )
                        state.should_continue = False
                        state.status = "failed"
                        break
                else:
                    consecutive_failures = 0

        except (NoTasksError, PersistenceError) as e:
            logger.error("Optimization %s failed: %s", state.session_id, e)
            state.status = "failed"
            state.should_continue = False
            state.last_error = str(e)
            state.completed_at = time.time()
            await self._emit(state, OptimizationStep.FAILED, kind="done", error=str(e))
            raise

        if self._stop_requested:
            state.should_continue = False
        if state.status != "failed":
            state.status = "completed"
        state.completed_at = time.time()

        # Overwrites the last iteration's checkpoint with the terminal state.
        if self._checkpoints is not None:
            try:
                await self._checkpoints.save(state)
            except PersistenceError as e:
                logger.error("Final checkpoint for %s failed: %s", state.session_id, e)
                state.status = "failed"
                state.last_error = str(e)
                await self._emit(state, OptimizationStep.FAILED, kind="done", error=str(e))
                raise

        final_step = OptimizationStep.FAILED if state.status == "failed" else OptimizationStep.COMPLETED
        await self._emit(state, final_step, kind="done", error=state.last_error)
        logger.info(
            "Optimization %s %s after %d iterations: objective %.4f",
            state.session_id, state.status, state.iteration, state.champion_objective,
        )
        return state

    async def run_iteration(self, state: OptimizationState) -> IterationResult:
        """Run one iteration and append its result to state.history."""
        state.iteration += 1
        logger.info("=== Iteration %d ===", state.iteration)
        t0 = time.time()

        result = IterationResult(
            iteration=state.iteration,
            champion_objective=state.champion_objective,
            best_candidate_objective=state.champion_objective,
            selection_mode=self._config.selection_mode,
        )
        try:
            await self._run_steps(state, result)
        except (NoTasksError, PersistenceError):
            raise
        except Exception as e:
            logger.warning("Iteration %d failed: %s", state.iteration, e)
            result.error = str(e)[:500] or type(e).__name__

        result.duration_s = round(time.time() - t0, 3)
        state.history.append(result)
        return result

    async def _run_steps(self, state: OptimizationState, result: IterationResult) -> None:
        config = self._config
        seed_base = config.seed_base + state.iteration * 1000

        # 1. Champion
        await self._emit(state, OptimizationStep.EVALUATING_CHAMPION)
        report = await evaluate_prompt(
            state.champion.composed(), self._tasks, self._generator, self._scorer,
            config, seed_base=seed_base,
            on_progress=self._eval_progress(state, OptimizationStep.EVALUATING_CHAMPION),
        )
        state.champion_objective = report.agg.objective
        result.champion_objective = report.agg.objective
        result.best_candidate_objective = report.agg.objective
        if state.baseline_objective is None:
            state.baseline_objective = report.agg.objective
        logger.info(
            "Champion objective %.4f (pass %.2f)",
            report.agg.objective, report.agg.mean_pass_rate,
        )

        # 2. Pairs
        await self._emit(state, OptimizationStep.MINING_PAIRS)
        runs = flatten_runs(report)
        if config.tiered_pairs:
            pairs = mine_tiered_pairs(
                runs, config.pair_min_sim, config.pair_min_delta, config.pair_max_pairs,
                high=config.tier_high, medium=config.tier_medium,
                count_min=config.story_count_min, count_max=config.story_count_max,
            )
            pairs_context = format_tiered_pairs_for_prompt(pairs)
        else:
            pairs = mine_contrastive_pairs(
                runs, config.pair_min_sim, config.pair_min_delta, config.pair_max_pairs,
            )
            pairs_context = format_pairs_for_prompt(pairs)
        result.pairs_found = len(pairs)
        if not pairs:
            logger.info("Converged: no contrastive pairs in %d runs", len(runs))
            state.should_continue = False
            return

        # 3. Patches
        await self._emit(state, OptimizationStep.GENERATING_PATCHES)
        proposals = await self._propose(state, pairs_context, report)
        result.candidates_generated = len(proposals)
        result.mutations_used = [mid for _, mid, _ in proposals if mid]
        if not proposals:
            logger.info("No usable patches this iteration")
            return

        # 4. Tournament
        await self._emit(state, OptimizationStep.TOURNAMENT)
        champion_objective = state.champion_objective
        candidates = []
        for idx, (patch, mutation_id, mutation_type) in enumerate(proposals):
            candidates.append(await self._evaluate_candidate(
                state, idx, patch, mutation_id, mutation_type, seed_base,
            ))

        tournament = run_tournament(
            candidates,
            baseline_objective=champion_objective,
            mode=config.selection_mode,
            reference_prompts=[state.champion.composed()],
            constraint_fit_threshold=config.constraint_fit_threshold,
            use_value_threshold=config.use_value_threshold,
            max_front_size=config.max_front_size,
            use_value_tie=config.use_value_tie,
            diversity_tie=config.diversity_tie,
        )
        if tournament.archive is not None:
            result.illumination = tournament.archive.illumination
            result.pareto_front_size = tournament.archive.pareto_front.stats.front_size
            result.nqd_changed_winner = tournament.nqd_changed_winner

        best = tournament.winner or (tournament.ranked[0] if tournament.ranked else None)
        if best is None:
            return
        result.best_candidate_id = best.id
        result.best_candidate_objective = best.objective
        result.best_candidate_patch = best.patch
        result.best_mutation_type = best.mutation_type

        # 5. Promotion
        await self._emit(state, OptimizationStep.PROMOTION)
        improvement = best.objective - champion_objective
        if should_promote(best.objective, champion_objective, config.promotion_threshold):
            state.champion = ChampionPrompt(base=state.champion.base, patch=best.patch)
            state.champion_objective = best.objective
            result.promoted = True
            logger.info(
                "Promoted %s: %.4f -> %.4f (+%.4f)",
                best.id, champion_objective, best.objective, improvement,
            )
        else:
            logger.info(
                "No promotion: best %s %.4f vs champion %.4f", best.id, best.objective, champion_objective,
            )

        # 6. Meta-evolution
        if config.meta_evolution and state.mutation_prompts:
            await self._emit(state, OptimizationStep.META_EVOLUTION)
            outcomes = [
                (c.mutation_id, c.objective, champion_objective)
                for c in candidates if c.mutation_id
            ]
            population = update_fitness(state.mutation_prompts, outcomes, config.fitness_alpha)
            if self._rewriter is not None and self._rng.random() < config.hypermutation_rate:
                evolved = await hypermutate(population, self._rewriter, self._rng, state.iteration)
                if evolved is not None:
                    population = evolved
                    result.hypermutation_applied = True
            state.mutation_prompts = population

    async def _propose(
        self,
        state: OptimizationState,
        pairs_context: str,
        report: DistributionReport,
    ) -> List[Proposal]:
        """Collect patch proposals; short or empty patches are dropped."""
        config = self._config
        base, current = state.champion.base, state.champion.patch

        if not (config.meta_evolution and state.mutation_prompts):
            patches = await self._proposer.propose(base, current, pairs_context, config.patch_candidates)
            raw: List[Proposal] = [(p, None, None) for p in patches]
        else:
            raw = await self._propose_with_operators(state, pairs_context, report)

        proposals = []
        for patch, mutation_id, mutation_type in raw:
            patch = clean_patch(patch)
            if len(patch) < config.min_patch_length:
                logger.debug("Discarding short patch (%d chars)", len(patch))
                continue
            proposals.append((patch, mutation_id, mutation_type))
        return proposals

    async def _propose_with_operators(
        self,
        state: OptimizationState,
        pairs_context: str,
        report: DistributionReport,
    ) -> List[Proposal]:
        """One patch per selected operator; usage is recorded on the population."""
        population = state.mutation_prompts
        example = best_run(report)
        working_example = (
            json.dumps(example.output.model_dump(), ensure_ascii=False, indent=2)
            if example is not None else None
        )
        previous = state.history[-1] if state.history else None

        used: List[str] = []
        proposals: List[Proposal] = []
        for _ in range(self._config.patch_candidates):
            operator = select_mutation(population, self._rng, used[-RECENT_EXCLUSION:])
            text = render_operator(
                operator,
                working_example=working_example,
                patch_a=state.champion.patch,
                patch_b=previous.best_candidate_patch if previous else "",
                fitness_a=state.champion_objective,
                fitness_b=previous.best_candidate_objective if previous else 0.0,
            )
            patch = await self._proposer.apply_operator(
                text, state.champion.base, state.champion.patch, pairs_context,
            )
            if patch:
                proposals.append((patch, operator.id, operator.type.value))
                used.append(operator.id)

        state.mutation_prompts = record_usage(population, used)
        return proposals

    async def _evaluate_candidate(
        self,
        state: OptimizationState,
        idx: int,
        patch: str,
        mutation_id: Optional[str],
        mutation_type: Optional[str],
        seed_base: int,
    ) -> Candidate:
        """Evaluate one patch. An evaluation error yields objective 0."""
        candidate_id = "candidate-{}-{}".format(state.iteration, idx)
        prompt_text = compose_prompt(state.champion.base, patch)
        try:
            report = await evaluate_prompt(
                prompt_text, self._tasks, self._generator, self._scorer,
                self._config, seed_base=seed_base,
                on_progress=self._eval_progress(state, OptimizationStep.TOURNAMENT, candidate_id),
            )
        except NoTasksError:
            raise
        except Exception as e:
            logger.warning("Candidate %s evaluation failed: %s", candidate_id, e)
            return Candidate(
                id=candidate_id,
                patch=patch,
                prompt_text=prompt_text,
                delta_vs_champion=-state.champion_objective,
                mutation_id=mutation_id,
                mutation_type=mutation_type,
                error=str(e)[:200] or type(e).__name__,
            )

        objective = report.agg.objective
        pass_rate = report.agg.mean_pass_rate
        logger.debug("Candidate %s objective %.4f pass %.2f", candidate_id, objective, pass_rate)
        return Candidate(
            id=candidate_id,
            patch=patch,
            prompt_text=prompt_text,
            objective=objective,
            pass_rate=pass_rate,
            schema_valid=pass_rate > 0,
            delta_vs_champion=objective - state.champion_objective,
            mutation_id=mutation_id,
            mutation_type=mutation_type,
        )

    def _eval_progress(
        self,
        state: OptimizationState,
        step: OptimizationStep,
        candidate_id: Optional[str] = None,
    ):
        async def _on_progress(completed: int, total: int) -> None:
            await self._emit(
                state, step, kind="eval",
                eval_progress=EvalProgress(completed=completed, total=total, candidate_id=candidate_id),
            )
        return _on_progress

    async def _emit(self, state: OptimizationState, step: OptimizationStep, kind: str = "step", **extra) -> None:
        if self._bus is None:
            return
        await self._bus.publish(ProgressEvent(
            kind=kind,
            step=step,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            champion_objective=state.champion_objective,
            **extra
        ))


def format_optimization_report(state: OptimizationState) -> str:
    """Human-readable summary of a finished (or checkpointed) run."""
    baseline = state.baseline_objective if state.baseline_objective is not None else 0.0
    lines = [
        "=== Optimization {} ({}) ===".format(state.session_id, state.status),
        "Iterations: {}/{}".format(state.iteration, state.max_iterations),
        "Baseline objective: {:.4f}".format(baseline),
        "Champion objective: {:.4f} ({:+.4f})".format(
            state.champion_objective, state.champion_objective - baseline,
        ),
        "",
    ]
    for r in state.history:
        marker = "PROMOTED" if r.promoted else ("ERROR" if r.error else "-")
        lines.append("  #{:<3} champion {:.4f}  best {:.4f}  pairs {:>2}  cands {:>2}  {}".format(
            r.iteration, r.champion_objective, r.best_candidate_objective,
            r.pairs_found, r.candidates_generated, marker,
        ))
        if r.error:
            lines.append("       error: {}".format(r.error))
    if state.champion.patch:
        lines.extend(["", "Champion patch:", state.champion.patch])
    return "\n".join(lines)
