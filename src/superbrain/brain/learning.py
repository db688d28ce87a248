"""
Strategy learning.

Tabular Q-learning over a small discrete state space derived from each
recall: which memory type dominated, how confident the best match was, how
many memories came back and the time of day. The learner picks one of four
response strategies, learns from a reward computed after the response, keeps
a bounded replay buffer sampled by TD-error priority, and periodically
adapts its own exploration rate.
"""

import dataclasses
import random
import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from superbrain.core.config import Settings
from superbrain.core.logging import get_logger
from superbrain.core.types import MemoryType

logger = get_logger("brain.learning")


class Strategy(Enum):
    """Response strategies, in tie-break order."""

    MEMORY_ONLY = "memory_only"
    BLEND_AI = "blend_ai"
    WIDEN_RECALL = "widen_recall"
    NARROW_RECALL = "narrow_recall"

    @property
    def uses_ai(self) -> bool:
        return self is Strategy.BLEND_AI


@dataclass(frozen=True)
class RecallState:
    """Discretised recall context."""

    dominant_type: str
    confidence_bucket: int
    recall_bucket: int
    time_bucket: int

    @property
    def signature(self) -> str:
        return (
            f"{self.dominant_type}|c{self.confidence_bucket}"
            f"|r{self.recall_bucket}|t{self.time_bucket}"
        )

    @classmethod
    def from_signature(cls, signature: str) -> "RecallState":
        dominant, conf, recall, hour = signature.split("|")
        return cls(dominant, int(conf[1:]), int(recall[1:]), int(hour[1:]))


def derive_state(
    similarities: Sequence[float],
    memory_types: Sequence[MemoryType],
    now: datetime,
    confidence: float | None = None,
) -> RecallState:
    """Build the learner state for a recall result.

    confidence overrides the top similarity when describing an outcome.
    """
    if memory_types:
        counts: dict[MemoryType, int] = {}
        for memory_type in memory_types:
            counts[memory_type] = counts.get(memory_type, 0) + 1
        # Most frequent, first seen wins ties
        dominant = max(counts, key=lambda t: (counts[t], -memory_types.index(t))).value
    else:
        dominant = "none"

    level = confidence if confidence is not None else (max(similarities) if similarities else 0.0)
    confidence_bucket = min(4, int(max(0.0, level) * 5))

    count = len(similarities)
    if count == 0:
        recall_bucket = 0
    elif count <= 2:
        recall_bucket = 1
    elif count <= 5:
        recall_bucket = 2
    else:
        recall_bucket = 3

    return RecallState(dominant, confidence_bucket, recall_bucket, now.hour // 6)


@dataclass
class QEntry:
    value: float = 0.0
    visits: int = 0
    last_step: int = 0


@dataclass(frozen=True)
class Transition:
    state: str
    action: Strategy
    reward: float
    next_state: str
    priority: float = 0.0  # |TD error| when last learned from


@dataclass(frozen=True)
class RewardSignals:
    """Outcome of one think() used to compute the reward."""

    confidence: float
    memory_reuse: float
    ai_attempted: bool = False
    ai_enhanced: bool = False


RewardFunction = Callable[[RewardSignals], float]


@dataclass(frozen=True)
class WeightedReward:
    """Linear reward over the outcome signals.

    reward = confidence_weight * confidence
           + reuse_weight * memory_reuse
           - ai_failure_penalty  (only when an AI assist was tried and failed)
    """

    confidence_weight: float = 0.7
    reuse_weight: float = 0.3
    ai_failure_penalty: float = 0.2

    def __call__(self, signals: RewardSignals) -> float:
        reward = (
            self.confidence_weight * signals.confidence
            + self.reuse_weight * signals.memory_reuse
        )
        if signals.ai_attempted and not signals.ai_enhanced:
            reward -= self.ai_failure_penalty
        return reward


@dataclass
class EvolutionSummary:
    trend: float
    trend_label: str
    exploration_before: float
    exploration_after: float
    pruned_entries: int
    q_table_size: int
    adaptations: list[str] = field(default_factory=list)


@dataclass
class LearnerStats:
    q_table_size: int
    states_seen: int
    total_updates: int
    exploration_rate: float
    buffer_size: int
    average_reward: float
    trend: float
    trend_label: str
    action_counts: dict[str, int]


class LearningModule:
    """Epsilon-greedy Q-learner with experience replay."""

    actions: tuple[Strategy, ...] = tuple(Strategy)

    def __init__(
        self,
        *,
        learning_rate: float = 0.1,
        discount_factor: float = 0.9,
        exploration_rate: float = 0.2,
        exploration_min: float = 0.05,
        exploration_max: float = 0.5,
        exploration_decay: float = 0.995,
        buffer_size: int = 1000,
        batch_size: int = 32,
        priority_epsilon: float = 0.01,
        prune_min_visits: int = 2,
        prune_stale_steps: int = 500,
        trend_window: int = 100,
        min_trend_samples: int = 10,
        trend_threshold: float = 0.02,
        reward_fn: RewardFunction | None = None,
        rng: random.Random | None = None,
        lock_stripes: int = 32,
    ):
        self.learning_rate = learning_rate
        self.discount_factor = discount_factor
        self.exploration_min = exploration_min
        self.exploration_max = exploration_max
        self.exploration_decay = exploration_decay
        self.batch_size = batch_size
        self.priority_epsilon = priority_epsilon
        self.prune_min_visits = prune_min_visits
        self.prune_stale_steps = prune_stale_steps
        self.min_trend_samples = min_trend_samples
        self.trend_threshold = trend_threshold
        self.reward_fn: RewardFunction = reward_fn or WeightedReward()
        self.rng = rng or random.Random()

        self._exploration = min(exploration_max, max(exploration_min, exploration_rate))
        self._q: dict[tuple[str, Strategy], QEntry] = {}
        self._stripes = [threading.Lock() for _ in range(lock_stripes)]
        self._maintenance = threading.Lock()
        self._counter_lock = threading.Lock()
        self._buffer: deque[Transition] = deque(maxlen=buffer_size)
        self._recent_rewards: deque[float] = deque(maxlen=trend_window)
        self._steps = 0
        self._action_counts = {action.value: 0 for action in self.actions}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "LearningModule":
        return cls(
            learning_rate=settings.learning_rate,
            discount_factor=settings.discount_factor,
            exploration_rate=settings.exploration_rate,
            exploration_min=settings.exploration_min,
            exploration_max=settings.exploration_max,
            exploration_decay=settings.exploration_decay,
            buffer_size=settings.replay_buffer_size,
            batch_size=settings.replay_batch_size,
            priority_epsilon=settings.replay_priority_epsilon,
            prune_min_visits=settings.prune_min_visits,
            prune_stale_steps=settings.prune_stale_steps,
            reward_fn=WeightedReward(
                confidence_weight=settings.reward_confidence_weight,
                reuse_weight=settings.reward_reuse_weight,
                ai_failure_penalty=settings.reward_ai_failure_penalty,
            ),
            **kwargs,
        )

    @property
    def exploration_rate(self) -> float:
        return self._exploration

    @property
    def steps(self) -> int:
        return self._steps

    @property
    def buffer(self) -> list[Transition]:
        return list(self._buffer)

    def _stripe(self, key: tuple[str, Strategy]) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    @staticmethod
    def _state_key(state: "RecallState | str") -> str:
        return state.signature if isinstance(state, RecallState) else state

    def value(self, state: "RecallState | str", action: Strategy) -> float:
        entry = self._q.get((self._state_key(state), action))
        return entry.value if entry else 0.0

    def visits(self, state: "RecallState | str", action: Strategy) -> int:
        entry = self._q.get((self._state_key(state), action))
        return entry.visits if entry else 0

    def set_value(self, state: "RecallState | str", action: Strategy, value: float, visits: int = 0) -> None:
        key = (self._state_key(state), action)
        with self._stripe(key):
            self._q[key] = QEntry(value=value, visits=visits, last_step=self._steps)

    def best_action(self, state: "RecallState | str") -> Strategy:
        """Greedy choice; equal values go to the least-visited action."""
        state_key = self._state_key(state)
        best = self.actions[0]
        best_rank: tuple[float, int] | None = None
        for action in self.actions:
            entry = self._q.get((state_key, action))
            value, visits = (entry.value, entry.visits) if entry else (0.0, 0)
            rank = (value, -visits)
            if best_rank is None or rank > best_rank:
                best, best_rank = action, rank
        return best

    def select_action(self, state: "RecallState | str") -> Strategy:
        """Epsilon-greedy selection."""
        if self.rng.random() < self._exploration:
            action = self.rng.choice(self.actions)
        else:
            action = self.best_action(state)
        with self._counter_lock:
            self._action_counts[action.value] += 1
        return action

    def _max_value(self, state_key: str) -> float:
        values = [
            entry.value for action in self.actions
            if (entry := self._q.get((state_key, action))) is not None
        ]
        return max(values) if values else 0.0

    def _apply(
        self, state_key: str, action: Strategy, reward: float, next_key: str
    ) -> tuple[float, float]:
        """Q-learning step for one entry. Returns (new value, TD error)."""
        future = self._max_value(next_key)
        key = (state_key, action)
        with self._stripe(key):
            entry = self._q.get(key)
            if entry is None:
                entry = QEntry()
                self._q[key] = entry
            td_error = reward + self.discount_factor * future - entry.value
            entry.value += self.learning_rate * td_error
            entry.visits += 1
            entry.last_step = self._steps
            return entry.value, td_error

    def update(
        self,
        state: "RecallState | str",
        action: Strategy,
        reward: float,
        next_state: "RecallState | str",
    ) -> float:
        """One online Q-learning step. Returns the new Q value."""
        return self._step(self._state_key(state), action, reward, self._state_key(next_state))[0]

    def _step(self, state_key: str, action: Strategy, reward: float, next_key: str) -> tuple[float, float]:
        with self._counter_lock:
            self._steps += 1
            self._exploration = max(self.exploration_min, self._exploration * self.exploration_decay)
        return self._apply(state_key, action, reward, next_key)

    def reward(self, signals: RewardSignals) -> float:
        return float(self.reward_fn(signals))

    def record(self, transition: Transition) -> None:
        """Remember a transition for replay and trend tracking."""
        with self._maintenance:
            self._buffer.append(transition)
        self._recent_rewards.append(transition.reward)

    def observe(
        self,
        state: RecallState,
        action: Strategy,
        signals: RewardSignals,
        next_state: RecallState,
    ) -> Transition:
        """Score an outcome, learn from it and keep it for replay."""
        reward = self.reward(signals)
        _, td_error = self._step(state.signature, action, reward, next_state.signature)
        transition = Transition(
            state.signature, action, reward, next_state.signature, priority=abs(td_error)
        )
        self.record(transition)
        return transition

    def replay_batch(self, batch_size: int | None = None) -> int:
        """Re-learn from past transitions, favouring the most surprising ones.

        Each transition is drawn with probability proportional to its last
        |TD error| plus priority_epsilon, without replacement, and its
        priority is refreshed from the replayed update.
        """
        with self._maintenance:
            if not self._buffer:
                return 0
            size = min(batch_size or self.batch_size, len(self._buffer))
            for index in self._sample_prioritized(size):
                t = self._buffer[index]
                _, td_error = self._apply(t.state, t.action, t.reward, t.next_state)
                self._buffer[index] = dataclasses.replace(t, priority=abs(td_error))
        logger.debug(f"Replayed {size} transitions")
        return size

    def _sample_prioritized(self, size: int) -> list[int]:
        """Buffer indices drawn by priority without replacement."""
        indices = list(range(len(self._buffer)))
        weights = [abs(t.priority) + self.priority_epsilon for t in self._buffer]
        chosen: list[int] = []
        for _ in range(size):
            pick = self.rng.choices(range(len(indices)), weights=weights)[0]
            chosen.append(indices.pop(pick))
            weights.pop(pick)
        return chosen

    def trend(self) -> float:
        """Mean of the newer half of recent rewards minus the older half."""
        rewards = list(self._recent_rewards)
        if len(rewards) < 2:
            return 0.0
        mid = len(rewards) // 2
        older, newer = rewards[:mid], rewards[mid:]
        return sum(newer) / len(newer) - sum(older) / len(older)

    def trend_label(self) -> str:
        if len(self._recent_rewards) < self.min_trend_samples:
            return "stable"
        trend = self.trend()
        if trend > self.trend_threshold:
            return "improving"
        if trend < -self.trend_threshold:
            return "declining"
        return "stable"

    def evolve(self) -> EvolutionSummary:
        """Adapt exploration to the reward trend and prune stale entries."""
        with self._maintenance:
            before = self._exploration
            trend = self.trend()
            label = self.trend_label()
            adaptations: list[str] = []

            if len(self._recent_rewards) >= self.min_trend_samples:
                with self._counter_lock:
                    if label == "improving":
                        self._exploration = max(self.exploration_min, self._exploration * 0.9)
                    else:
                        self._exploration = min(self.exploration_max, self._exploration * 1.1)
                    after = self._exploration
                if after != before:
                    verb = "Decreased" if after < before else "Increased"
                    adaptations.append(
                        f"{verb} exploration {before:.3f} -> {after:.3f} (trend {label})"
                    )
            else:
                adaptations.append(
                    f"Kept exploration at {before:.3f} "
                    f"({len(self._recent_rewards)}/{self.min_trend_samples} rewards)"
                )

            pruned = self._prune()
            if pruned:
                adaptations.append(f"Pruned {pruned} rarely visited Q entries")

            summary = EvolutionSummary(
                trend=trend,
                trend_label=label,
                exploration_before=before,
                exploration_after=self._exploration,
                pruned_entries=pruned,
                q_table_size=len(self._q),
                adaptations=adaptations,
            )

        logger.info(
            f"Evolved: trend={label} ({trend:+.3f}), exploration={summary.exploration_after:.3f}, "
            f"pruned={pruned}"
        )
        return summary

    def _prune(self) -> int:
        pruned = 0
        for key, entry in list(self._q.items()):
            if entry.visits >= self.prune_min_visits:
                continue
            if self._steps - entry.last_step <= self.prune_stale_steps:
                continue
            # Lock only this entry so online updates elsewhere keep going
            with self._stripe(key):
                current = self._q.get(key)
                if current is not None and current.visits < self.prune_min_visits:
                    del self._q[key]
                    pruned += 1
        return pruned

    def export_q_table(self) -> list[tuple[str, str, float, int]]:
        return [
            (state, action.value, entry.value, entry.visits)
            for (state, action), entry in list(self._q.items())
        ]

    def import_q_table(self, rows: Sequence[tuple[str, str, float, int]]) -> int:
        loaded = 0
        for state, action, value, visits in rows:
            try:
                strategy = Strategy(action)
            except ValueError:
                logger.warning(f"Ignoring Q entry with unknown action {action!r}")
                continue
            self._q[(state, strategy)] = QEntry(value=value, visits=visits, last_step=self._steps)
            loaded += 1
        return loaded

    def stats(self) -> LearnerStats:
        rewards = list(self._recent_rewards)
        return LearnerStats(
            q_table_size=len(self._q),
            states_seen=len({state for state, _ in list(self._q)}),
            total_updates=self._steps,
            exploration_rate=self._exploration,
            buffer_size=len(self._buffer),
            average_reward=sum(rewards) / len(rewards) if rewards else 0.0,
            trend=self.trend(),
            trend_label=self.trend_label(),
            action_counts=dict(self._action_counts),
        )
