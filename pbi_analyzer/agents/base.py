"""Base agent with retry and validation logic."""

import logging
import time
from typing import Any, Dict, Tuple, Type

from pbi_analyzer.exceptions import Cancelled, StepLimitExceeded
from pbi_analyzer.services.llm_client import LLMClient

logger = logging.getLogger(__name__)


class BaseAgent:
    """
    LLM-backed agent run through execute().

    Subclasses implement _run() and may tighten _validate(). An attempt that
    raises or produces an invalid result is retried with a linear backoff,
    except for NON_RETRYABLE errors which end the job as they are.
    """

    NON_RETRYABLE: Tuple[Type[BaseException], ...] = (Cancelled, StepLimitExceeded)

    def __init__(self, llm_client: LLMClient, retry_delay: float = 5.0):
        self.llm = llm_client
        self.retry_delay = retry_delay

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def execute(self, payload: Dict[str, Any], max_retries: int = 3) -> Dict[str, Any]:
        """
        Run the agent until it yields a valid result.

        Args:
            payload: Agent input, validated by the subclass's input schema
            max_retries: Attempts before giving up

        Returns:
            The subclass's output dict

        Raises:
            Exception: The last attempt's error, or ValueError if every
                attempt produced an invalid result
        """
        for attempt in range(1, max_retries + 1):
            logger.info(f"Agent {self.name} attempt {attempt}/{max_retries}")
            try:
                result = self._run(payload)
            except self.NON_RETRYABLE:
                raise
            except Exception as e:
                logger.error(f"Agent {self.name} error: {e}")
                if attempt == max_retries:
                    raise
            else:
                if self._validate(result):
                    logger.info(f"Agent {self.name} succeeded")
                    return result
                logger.warning(f"Agent {self.name} produced an invalid result")

            if attempt < max_retries and self.retry_delay > 0:
                delay = self.retry_delay * attempt
                logger.warning(f"Agent {self.name} waiting {delay}s before attempt {attempt + 1}")
                time.sleep(delay)

        raise ValueError(f"Agent {self.name} failed after {max_retries} attempts")

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _validate(self, result: Dict[str, Any]) -> bool:
        """Whether a result is usable; the default accepts anything."""
        return True
