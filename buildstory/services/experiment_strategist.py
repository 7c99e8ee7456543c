"""
ExperimentStrategist - per-slot variant selection and reward bookkeeping.

Orchestrates the bandit against the arm store:
- choose_optimal_variant: Thompson Sampling over a slot's candidate sections
- record_conversion: reward application via compare-and-set with retries
- deploy_variant: register a section as an arm without touching its counts
- process_timeouts: turn "shown but never converted" into a failure signal
- get_section_performance / reset_section_bandit: operator utilities

No arm counts are cached here; every read and write goes through the store.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from ..core.config import Config
from ..core.errors import (
    ArmStateConflictError,
    BuildStoryError,
    EmptyCandidateListError,
    InputError,
    InvalidBanditParameterError,
)
from ..core.observability import get_logfire
from .bandit_state_store import BanditStateStore
from .content_hasher import compute_variant_id
from .models import (
    CONVERSION_EVENT_KINDS,
    ArmPerformance,
    ArmState,
    EventKind,
    InteractionEvent,
    SectionPerformance,
    Segment,
    TimeoutSweepResult,
    VariantChoice,
)
from .variant_bandit import VariantBandit, arms_from_states, initial_arm_state

logger = logging.getLogger(__name__)

# Backoff between compare-and-set attempts (seconds)
CONFLICT_BACKOFF_MULTIPLIER = 0.01
CONFLICT_BACKOFF_MAX = 0.2


class ExperimentStrategist:
    """Chooses sections per slot and feeds outcomes back into the arms."""

    def __init__(
        self,
        store: BanditStateStore,
        bandit: Optional[VariantBandit] = None,
        max_update_attempts: int = Config.ARM_UPDATE_MAX_ATTEMPTS,
    ):
        self.store = store
        self.bandit = bandit or VariantBandit()
        self.max_update_attempts = max_update_attempts
        self._lf = get_logfire()

    # =========================================================================
    # Selection
    # =========================================================================

    async def choose_optimal_variant(
        self,
        scope: str,
        slot: str,
        candidates: Sequence[Mapping[str, Any]],
        segment: Optional[Segment] = None,
    ) -> VariantChoice:
        """
        Pick one section for a slot.

        A single candidate is returned with posterior_mean 1.0 and is_new False
        without sampling. With several, every candidate's arm is ensured first,
        then one Beta draw per arm decides.

        Args:
            scope: Experiment boundary (story id)
            slot: Slot key
            candidates: Candidate sections for the slot
            segment: Visitor segment, recorded on the selection event

        Returns:
            VariantChoice for the winning section

        Raises:
            EmptyCandidateListError: No candidates
            ContentHashError: A candidate cannot be hashed
            StorageError: Arm store failure
        """
        if not candidates:
            raise EmptyCandidateListError(f"No candidate sections for slot '{slot}'")

        with self._lf.span("choose_optimal_variant", scope=scope, slot=slot,
                           candidate_count=len(candidates)):
            # First occurrence of each identifier resolves the winner back to a section
            sections_by_id: Dict[str, Dict[str, Any]] = {}
            for candidate in candidates:
                variant_id = compute_variant_id(candidate)
                sections_by_id.setdefault(variant_id, dict(candidate))

            if len(sections_by_id) == 1:
                variant_id, section = next(iter(sections_by_id.items()))
                await self.store.ensure_arm_state(scope, slot, variant_id)
                return VariantChoice(
                    slot=slot,
                    variant_id=variant_id,
                    section=section,
                    posterior_mean=1.0,
                    is_new=False,
                )

            states: List[ArmState] = await asyncio.gather(*[
                self.store.ensure_arm_state(scope, slot, variant_id)
                for variant_id in sections_by_id
            ])

            winner_id = self.bandit.choose_arm(arms_from_states(states))
            winner = next(s for s in states if s.variant_id == winner_id)
            posterior_mean = self.bandit.conversion_rate(winner.alpha, winner.beta)

            await self.store.append_event(InteractionEvent(
                scope=scope,
                slot=slot,
                kind=EventKind.VARIANT_SELECTED,
                segment=segment,
                variant_id=winner_id,
                metadata={
                    "posterior_mean": posterior_mean,
                    "alpha": winner.alpha,
                    "beta": winner.beta,
                    "candidate_count": len(sections_by_id),
                },
            ))
            logger.debug(
                f"Selected {winner_id[:12]} for {scope}/{slot} "
                f"(alpha={winner.alpha}, beta={winner.beta}, mean={posterior_mean:.3f})"
            )

            return VariantChoice(
                slot=slot,
                variant_id=winner_id,
                section=sections_by_id[winner_id],
                posterior_mean=posterior_mean,
                is_new=winner.is_prior,
            )

    async def deploy_variant(
        self,
        scope: str,
        slot: str,
        section: Mapping[str, Any],
        segment: Optional[Segment] = None,
    ) -> str:
        """Register a section as an arm (counts untouched); returns its variant id."""
        variant_id = compute_variant_id(section)
        await self.store.ensure_arm_state(scope, slot, variant_id)
        await self.store.append_event(InteractionEvent(
            scope=scope,
            slot=slot,
            kind=EventKind.VARIANT_DEPLOYED,
            segment=segment,
            variant_id=variant_id,
        ))
        logger.info(f"Deployed variant {variant_id[:12]} to {scope}/{slot}")
        return variant_id

    # =========================================================================
    # Rewards
    # =========================================================================

    async def _apply_reward_once(
        self, scope: str, slot: str, variant_id: str, reward: int,
    ) -> ArmState:
        current = await self.store.get_arm_state(scope, slot, variant_id)
        if current is None:
            current = await self.store.ensure_arm_state(scope, slot, variant_id)

        updated = self.bandit.update_state(current, reward)
        if not await self.store.compare_and_set_arm_state(current, updated):
            raise ArmStateConflictError(scope, slot, variant_id)
        return updated

    async def _apply_reward(
        self, scope: str, slot: str, variant_id: str, reward: int,
    ) -> ArmState:
        """Read-modify-write against the latest stored state, retried on conflict."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_update_attempts),
            wait=wait_random_exponential(
                multiplier=CONFLICT_BACKOFF_MULTIPLIER, max=CONFLICT_BACKOFF_MAX
            ),
            retry=retry_if_exception_type(ArmStateConflictError),
            reraise=True,
        ):
            with attempt:
                updated = await self._apply_reward_once(scope, slot, variant_id, reward)
        return updated

    async def record_conversion(
        self,
        scope: str,
        slot: str,
        variant_id: str,
        reward: int = 1,
        segment: Optional[Segment] = None,
    ) -> ArmState:
        """
        Apply a binary reward to an arm.

        The arm is created with the prior if it does not exist yet (e.g. a
        conversion arriving after a restart).

        Returns:
            The arm state after the update

        Raises:
            InvalidBanditParameterError: reward is not 0 or 1
            ArmStateConflictError: Lost the compare-and-set on every attempt
            StorageError: Arm store failure
        """
        if isinstance(reward, bool) or reward not in (0, 1):
            raise InvalidBanditParameterError(f"Reward must be 0 or 1, got {reward!r}")

        with self._lf.span("record_conversion", scope=scope, slot=slot, reward=reward):
            updated = await self._apply_reward(scope, slot, variant_id, reward)

            await self.store.append_event(InteractionEvent(
                scope=scope,
                slot=slot,
                kind=EventKind.CONVERSION if reward == 1 else EventKind.NO_CONVERSION,
                segment=segment,
                variant_id=variant_id,
                metadata={"reward": reward, "alpha": updated.alpha, "beta": updated.beta},
            ))

        logger.info(
            f"Recorded reward {reward} for {scope}/{slot}/{variant_id[:12]} "
            f"-> alpha={updated.alpha}, beta={updated.beta}"
        )
        return updated

    async def process_timeouts(
        self,
        scope: str,
        window_minutes: float = Config.DEFAULT_TIMEOUT_MINUTES,
        now: Optional[datetime] = None,
        dedupe_per_bucket: bool = True,
    ) -> TimeoutSweepResult:
        """
        Penalize arms with no conversion-like event in the trailing window.

        Each such arm gets one reward of 0. With dedupe_per_bucket, an arm is
        penalized at most once per window-sized time bucket, so overlapping
        sweeps do not stack failures. An arm whose penalty fails is logged,
        counted in arms_failed and has its claim released so the next sweep in
        the same bucket retries it; the remaining arms are still processed.

        Args:
            scope: Story id to sweep
            window_minutes: Trailing window length
            now: Sweep time (defaults to the current UTC time)
            dedupe_per_bucket: Claim (arm, bucket) before penalizing

        Returns:
            TimeoutSweepResult with per-sweep counts
        """
        if window_minutes <= 0:
            raise InputError(f"window_minutes must be positive, got {window_minutes}")

        now = now or datetime.now(timezone.utc)
        since = now - timedelta(minutes=window_minutes)
        bucket = int(now.timestamp() // (window_minutes * 60))
        result = TimeoutSweepResult(scope=scope, window_minutes=window_minutes)

        with self._lf.span("process_timeouts", scope=scope, window_minutes=window_minutes):
            states = await self.store.list_arm_states(scope)
            for state in states:
                result.arms_checked += 1
                claimed = False
                try:
                    conversions = await self.store.count_events(
                        scope, state.slot, state.variant_id, CONVERSION_EVENT_KINDS, since,
                    )
                    if conversions > 0:
                        continue

                    if dedupe_per_bucket:
                        claimed = await self.store.claim_timeout_bucket(
                            scope, state.slot, state.variant_id, bucket,
                        )
                        if not claimed:
                            result.arms_skipped += 1
                            continue

                    updated = await self._apply_reward(scope, state.slot, state.variant_id, 0)
                except BuildStoryError as e:
                    logger.error(
                        f"Timeout penalty failed for {scope}/{state.slot}/{state.variant_id}: {e}"
                    )
                    result.arms_failed += 1
                    if claimed:
                        await self._release_timeout_claim(scope, state, bucket)
                    continue

                try:
                    await self.store.append_event(InteractionEvent(
                        scope=scope,
                        slot=state.slot,
                        kind=EventKind.TIMEOUT_PENALTY,
                        variant_id=state.variant_id,
                        metadata={
                            "window_minutes": window_minutes,
                            "bucket": bucket,
                            "beta": updated.beta,
                        },
                    ))
                except BuildStoryError as e:
                    # The penalty is already applied; only the audit row is lost
                    logger.warning(f"Could not log timeout penalty for {scope}/{state.slot}: {e}")
                result.arms_penalized += 1

        logger.info(
            f"Timeout sweep for {scope}: checked={result.arms_checked}, "
            f"penalized={result.arms_penalized}, skipped={result.arms_skipped}, "
            f"failed={result.arms_failed}"
        )
        return result

    async def _release_timeout_claim(self, scope: str, state: ArmState, bucket: int) -> None:
        try:
            await self.store.release_timeout_bucket(scope, state.slot, state.variant_id, bucket)
        except BuildStoryError as e:
            logger.error(
                f"Could not release timeout claim for {scope}/{state.slot}/{state.variant_id} "
                f"bucket {bucket}: {e}"
            )


    # =========================================================================
    # Reporting and maintenance
    # =========================================================================

    async def get_section_performance(self, scope: str, slot: str) -> SectionPerformance:
        """Conversion estimates, intervals and trial counts for every arm in a slot."""
        states = await self.store.list_arm_states(scope, slot)
        report = SectionPerformance(scope=scope, slot=slot)
        if not states:
            return report

        best: Optional[ArmState] = None
        best_rate = -1.0
        for state in states:
            rate = self.bandit.conversion_rate(state.alpha, state.beta)
            report.arms.append(ArmPerformance(
                variant_id=state.variant_id,
                alpha=state.alpha,
                beta=state.beta,
                conversion_rate=rate,
                confidence_interval=self.bandit.confidence_interval(state.alpha, state.beta),
                trials=state.trials,
            ))
            if rate > best_rate:
                best, best_rate = state, rate

        report.best_variant_id = best.variant_id
        report.total_trials = sum(s.trials for s in states)
        report.expected_regret = self.bandit.calculate_regret(
            arms_from_states(states), best.variant_id,
        )
        return report

    async def reset_section_bandit(self, scope: str, slot: str) -> int:
        """Put every arm in a slot back to Beta(1, 1); returns the number reset."""
        states = await self.store.list_arm_states(scope, slot)
        await asyncio.gather(*[
            self.store.upsert_arm_state(initial_arm_state(scope, slot, s.variant_id))
            for s in states
        ])
        await self.store.append_event(InteractionEvent(
            scope=scope,
            slot=slot,
            kind=EventKind.BANDIT_RESET,
            metadata={"arms_reset": len(states)},
        ))
        logger.warning(f"Reset {len(states)} arms for {scope}/{slot}")
        return len(states)
