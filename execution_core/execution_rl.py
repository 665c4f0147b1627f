"""
Execution Policy (Reinforcement Learning)
=========================================

Tabular Q-learning over discretized execution states.

Features:
- Sparse state discretization (log-scale size and liquidity buckets)
- Epsilon-greedy action selection with multiplicative decay and floor
- Weighted, clamped reward normalization
- Temporal-difference updates with configurable max-next-Q estimate
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import numpy as np

from execution_core.enums import ExecutionMode, Urgency
from execution_core.state_store import StateStore

logger = logging.getLogger(__name__)


REWARD_WEIGHTS = {
    "cost": 0.30,
    "slippage": 0.25,
    "latency": 0.15,
    "success": 0.20,
    "impact": 0.10,
}

NEXT_Q_OBSERVED = "observed"
NEXT_Q_AVAILABLE = "available"


def _log_bucket(value: float) -> float:
    if value <= 0:
        return 0.0
    return math.floor(math.log10(value) * 2) / 2


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


@dataclass
class ExecutionState:
    symbol: str
    size: float
    urgency: Urgency
    market_volatility: float
    liquidity: float
    time_of_day: int  # hour 0-23
    day_of_week: int  # Monday = 0

    @classmethod
    def capture(
        cls,
        symbol: str,
        size: float,
        urgency: Urgency,
        market_volatility: float,
        liquidity: float,
        at: datetime | None = None,
    ) -> "ExecutionState":
        at = at or datetime.now(timezone.utc)
        return cls(
            symbol=symbol,
            size=size,
            urgency=urgency,
            market_volatility=market_volatility,
            liquidity=liquidity,
            time_of_day=at.hour,
            day_of_week=at.weekday(),
        )

    @property
    def key(self) -> str:
        return "_".join([
            self.symbol,
            str(_log_bucket(self.size)),
            Urgency(self.urgency).tier.value,
            str(math.floor(self.market_volatility * 10) / 10),
            str(_log_bucket(self.liquidity)),
            str(self.time_of_day // 6),
            str(self.day_of_week),
        ])


@dataclass
class ExecutionAction:
    mode: ExecutionMode
    venue: str
    slices: int | None = None
    interval_ms: int | None = None
    peak_size: float | None = None

    @property
    def key(self) -> str:
        key = f"{self.mode.value}_{self.venue}"
        if self.slices is not None or self.interval_ms is not None or self.peak_size is not None:
            key += f"_{self.slices}_{self.interval_ms}_{self.peak_size}"
        return key

    def to_dict(self) -> dict:
        return {
            'mode': self.mode.value,
            'venue': self.venue,
            'slices': self.slices,
            'interval_ms': self.interval_ms,
            'peak_size': self.peak_size,
        }


@dataclass
class ExecutionReward:
    """Raw execution outcome. Costs are fractions of notional."""
    cost: float
    slippage: float
    latency_ms: float
    success: bool
    market_impact: float


@dataclass
class QEntry:
    state_key: str
    action_key: str
    value: float = 0.0
    visits: int = 0
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionPolicy:
    """
    Epsilon-greedy Q-learning policy for execution mode/venue choice.

    Epsilon starts at `epsilon`, decays by `epsilon_decay` after every
    update and never drops below `epsilon_min`.
    """

    def __init__(
        self,
        learning_rate: float = 0.1,
        discount_factor: float = 0.9,
        epsilon: float = 0.2,
        epsilon_min: float = 0.05,
        epsilon_decay: float = 0.995,
        history_size: int = 1000,
        large_order_threshold: float = 10_000.0,
        very_large_order_threshold: float = 50_000.0,
        next_q_mode: str = NEXT_Q_OBSERVED,
        seed: int | None = None,
    ):
        if epsilon_min > epsilon:
            raise ValueError(f"epsilon_min {epsilon_min} exceeds epsilon {epsilon}")
        if next_q_mode not in (NEXT_Q_OBSERVED, NEXT_Q_AVAILABLE):
            raise ValueError(f"Unknown next_q_mode: {next_q_mode}")

        self.learning_rate = learning_rate
        self.discount_factor = discount_factor
        self.initial_epsilon = epsilon
        self.epsilon = epsilon
        self.epsilon_min = epsilon_min
        self.epsilon_decay = epsilon_decay
        self.large_order_threshold = large_order_threshold
        self.very_large_order_threshold = very_large_order_threshold
        self.next_q_mode = next_q_mode

        self._rng = np.random.default_rng(seed)
        self._q_table: StateStore[tuple[str, str], QEntry] = StateStore("q_table")
        self._history: deque[dict] = deque(maxlen=history_size)
        self._total_updates = 0
        self._explorations = 0

    # -------------------------------------------------------------------------
    # Action selection
    # -------------------------------------------------------------------------

    def generate_available_actions(self, state: ExecutionState, venues: list[str]) -> list[ExecutionAction]:
        actions = []
        for venue in venues:
            actions.append(ExecutionAction(ExecutionMode.DIRECT, venue))
            if state.size > self.large_order_threshold:
                actions.append(ExecutionAction(ExecutionMode.TWAP, venue, slices=3, interval_ms=200))
            if state.size > self.very_large_order_threshold:
                actions.append(ExecutionAction(ExecutionMode.ICEBERG, venue, peak_size=state.size / 3))
        return actions

    def get_q_value(self, state_key: str, action_key: str) -> float:
        entry = self._q_table.get((state_key, action_key))
        return entry.value if entry else 0.0

    def select_action(self, state: ExecutionState, available_actions: list[ExecutionAction]) -> ExecutionAction:
        """
        Epsilon-greedy choice among available actions.

        Raises:
            ValueError: If no actions are available
        """
        if not available_actions:
            raise ValueError("No available actions to select from")

        if self._rng.random() < self.epsilon:
            self._explorations += 1
            action = available_actions[int(self._rng.integers(len(available_actions)))]
            logger.debug(f"Exploring {action.key} for {state.key} (epsilon={self.epsilon:.3f})")
            return action

        state_key = state.key
        best_action = available_actions[0]
        best_value = -math.inf
        for action in available_actions:
            value = self.get_q_value(state_key, action.key)
            if value > best_value:
                best_value = value
                best_action = action
        logger.debug(f"Exploiting {best_action.key} (Q={best_value:.4f}) for {state_key}")
        return best_action

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    @staticmethod
    def normalize_reward(reward: ExecutionReward) -> float:
        """Weighted sum of inverted components, each clamped to [-1, 1]."""
        components = {
            "cost": _clamp(-reward.cost * 1000),
            "slippage": _clamp(-reward.slippage * 1000),
            "latency": _clamp(-reward.latency_ms / 1000),
            "success": 0.5 if reward.success else -0.5,
            "impact": _clamp(-reward.market_impact * 1000),
        }
        return sum(REWARD_WEIGHTS[name] * value for name, value in components.items())

    def apply_td_update(self, state_key: str, action_key: str, reward: float, max_next_q: float) -> float:
        """Q <- Q + alpha * (r + gamma * maxNextQ - Q). Returns the new Q."""
        key = (state_key, action_key)
        entry = self._q_table.get(key)
        if entry is None:
            entry = QEntry(state_key=state_key, action_key=action_key)
            self._q_table.put(key, entry)

        entry.value += self.learning_rate * (reward + self.discount_factor * max_next_q - entry.value)
        entry.visits += 1
        entry.last_updated = datetime.now(timezone.utc)
        return entry.value

    def max_next_q(
        self,
        next_state: ExecutionState | None,
        next_actions: list[ExecutionAction] | None = None,
    ) -> float:
        """
        Estimate max_a' Q(s', a').

        "observed" mode takes the max over entries already stored for the
        next state, floored at 0. "available" mode takes the max over the
        given next actions, unknown actions counting as 0.
        """
        if next_state is None:
            return 0.0
        next_key = next_state.key
        if self.next_q_mode == NEXT_Q_AVAILABLE and next_actions:
            return max(self.get_q_value(next_key, a.key) for a in next_actions)

        best = 0.0
        for (state_key, _), entry in self._q_table.items():
            if state_key == next_key and entry.value > best:
                best = entry.value
        return best

    def update(
        self,
        state: ExecutionState,
        action: ExecutionAction,
        reward: ExecutionReward,
        next_state: ExecutionState | None = None,
        next_actions: list[ExecutionAction] | None = None,
    ) -> float:
        """Learn from one outcome and decay epsilon. Returns the new Q."""
        normalized = self.normalize_reward(reward)
        new_value = self.apply_td_update(
            state.key, action.key, normalized, self.max_next_q(next_state, next_actions)
        )
        self._total_updates += 1
        self._history.append({
            'state': state.key,
            'action': action.key,
            'reward': normalized,
            'q_value': new_value,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })
        self.epsilon = min(self.initial_epsilon, max(self.epsilon_min, self.epsilon * self.epsilon_decay))
        logger.debug(
            f"Q update {state.key}/{action.key}: reward={normalized:.4f} "
            f"Q={new_value:.4f} epsilon={self.epsilon:.4f}"
        )
        return new_value

    def reset_learning(self) -> None:
        self._q_table.clear()
        self._history.clear()
        self._total_updates = 0
        self._explorations = 0
        self.epsilon = self.initial_epsilon
        logger.info("Execution policy learning reset")

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    @property
    def exploration_phase(self) -> str:
        if self.epsilon > 0.15:
            return "HIGH"
        if self.epsilon > 0.08:
            return "MEDIUM"
        return "LOW"

    def get_q_table_stats(self) -> dict:
        entries = self._q_table.values()
        top = sorted(entries, key=lambda e: e.value, reverse=True)[:10]
        return {
            'total_states': len({e.state_key for e in entries}),
            'total_entries': len(entries),
            'avg_q_value': float(np.mean([e.value for e in entries])) if entries else 0.0,
            'epsilon': self.epsilon,
            'top_actions': [
                {'state': e.state_key, 'action': e.action_key, 'q_value': e.value, 'visits': e.visits}
                for e in top
            ],
        }

    def get_learning_progress(self) -> dict:
        recent = [h['reward'] for h in list(self._history)[-100:]]
        return {
            'total_updates': self._total_updates,
            'explorations': self._explorations,
            'epsilon': self.epsilon,
            'exploration_phase': self.exploration_phase,
            'avg_recent_reward': float(np.mean(recent)) if recent else 0.0,
        }


def create_execution_policy(config: dict[str, Any] | None = None) -> ExecutionPolicy:
    """Build an ExecutionPolicy from the `rl` config section."""
    config = config or {}
    return ExecutionPolicy(
        learning_rate=config.get("learning_rate", 0.1),
        discount_factor=config.get("discount_factor", 0.9),
        epsilon=config.get("epsilon", 0.2),
        epsilon_min=config.get("epsilon_min", 0.05),
        epsilon_decay=config.get("epsilon_decay", 0.995),
        history_size=config.get("history_size", 1000),
        large_order_threshold=config.get("large_order_threshold", 10_000.0),
        very_large_order_threshold=config.get("very_large_order_threshold", 50_000.0),
        next_q_mode=config.get("next_q_mode", NEXT_Q_OBSERVED),
        seed=config.get("seed"),
    )
