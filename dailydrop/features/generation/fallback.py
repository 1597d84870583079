from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from dailydrop.core.errors import FallbackExhaustedError
from dailydrop.features.generation.strategies import DEFAULT_CHAIN, StrategyDispatcher, StrategyName

logger = logging.getLogger("dailydrop.generation.fallback")


@dataclass(frozen=True)
class Outcome:
    success: bool
    drop_id: Optional[str] = None
    strategy: Optional[StrategyName] = None
    exhausted_strategies: List[StrategyName] = field(default_factory=list)

    @property
    def is_emergency(self) -> bool:
        return self.strategy == StrategyName.EMERGENCY_PLACEHOLDER

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "drop_id": self.drop_id,
            "strategy": self.strategy.value if self.strategy else None,
            "is_emergency": self.is_emergency,
            "exhausted_strategies": [s.value for s in self.exhausted_strategies],
        }


class FallbackChainExecutor:
    """Try strategies in order until one yields an artifact id.

    Non-terminal strategies that return nothing, raise, or exceed their
    timeout are skipped. The last strategy in the chain is terminal: if it
    raises or times out there is nothing left to try, so the failure is
    raised as FallbackExhaustedError.
    """

    def __init__(
        self,
        dispatcher: StrategyDispatcher,
        *,
        chain: Sequence[StrategyName] = DEFAULT_CHAIN,
        strategy_timeout: float = 120.0,
    ):
        if not chain:
            raise ValueError("fallback chain must contain at least one strategy")
        self._dispatcher = dispatcher
        self._chain = tuple(chain)
        self._strategy_timeout = strategy_timeout

    @property
    def chain(self) -> tuple:
        return self._chain

    async def run(self, agent_id: str) -> Outcome:
        exhausted: List[StrategyName] = []
        terminal = self._chain[-1]

        for strategy in self._chain:
            try:
                drop_id = await asyncio.wait_for(
                    self._dispatcher.attempt(strategy, agent_id),
                    timeout=self._strategy_timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                exhausted.append(strategy)
                if strategy == terminal:
                    logger.error(
                        "[fallback] terminal strategy failed",
                        exc_info=True,
                        extra={"agent_id": agent_id, "strategy": strategy.value},
                    )
                    raise FallbackExhaustedError(
                        f"All generation strategies failed for {agent_id}; "
                        f"terminal strategy {strategy.value} raised {type(exc).__name__}",
                        agent_id=agent_id,
                        exhausted=exhausted,
                    ) from exc
                logger.warning(
                    "[fallback] strategy failed, advancing",
                    extra={"agent_id": agent_id, "strategy": strategy.value, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue

            if drop_id:
                if exhausted:
                    logger.info(
                        "[fallback] recovered",
                        extra={"agent_id": agent_id, "strategy": strategy.value, "skipped": [s.value for s in exhausted]},
                    )
                return Outcome(success=True, drop_id=drop_id, strategy=strategy, exhausted_strategies=exhausted)

            exhausted.append(strategy)
            logger.info(
                "[fallback] strategy not available",
                extra={"agent_id": agent_id, "strategy": strategy.value},
            )

        logger.error(
            "[fallback] every strategy reported no artifact",
            extra={"agent_id": agent_id, "exhausted": [s.value for s in exhausted]},
        )
        return Outcome(success=False, exhausted_strategies=exhausted)
