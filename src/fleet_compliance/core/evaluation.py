"""Policy evaluation engine.

Evaluators are registered explicitly in an EvaluatorRegistry keyed by their
policy type. PolicyEvaluationService dispatches every configured policy to
its evaluator and isolates failures per (policy, repository) pair: an
evaluator that raises is logged and counted as "no violation" for that pair.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from fleet_compliance.adapters.github_models import GitHubRepository
from fleet_compliance.core.config_models import PolicyConfig
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ViolationFinding:
    """An evaluator's verdict that a repository fails a policy.

    Attributes:
        policy_type: Type key of the violated policy.
        details: Optional human-readable reason.
    """

    policy_type: str
    details: str | None = None


class PolicyEvaluator(Protocol):
    """Strategy for one policy type. Evaluators read GitHub, never mutate it."""

    policy_type: str

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        """Return a finding if `repository` violates the policy, else None."""
        ...


class EvaluatorRegistry:
    """Explicit registry of evaluators keyed by policy type (case-insensitive)."""

    def __init__(self, evaluators: Iterable[PolicyEvaluator] = ()) -> None:
        self._evaluators: dict[str, PolicyEvaluator] = {}
        for evaluator in evaluators:
            self.register(evaluator)

    def register(self, evaluator: PolicyEvaluator) -> None:
        """Add an evaluator.

        Raises:
            ValueError: If an evaluator for the same policy type is already registered.
        """
        key = evaluator.policy_type.strip().lower()
        if key in self._evaluators:
            raise ValueError(f"An evaluator for policy type '{evaluator.policy_type}' is already registered")
        self._evaluators[key] = evaluator

    def get(self, policy_type: str) -> PolicyEvaluator | None:
        return self._evaluators.get(policy_type.strip().lower())

    @property
    def policy_types(self) -> list[str]:
        return sorted(self._evaluators)


class PolicyEvaluationService:
    """Runs every configured policy against one repository.

    Args:
        registry: Registered evaluators.
    """

    def __init__(self, registry: EvaluatorRegistry) -> None:
        self._registry = registry

    async def evaluate_repository(
        self,
        repository: GitHubRepository,
        policies: Sequence[PolicyConfig],
    ) -> list[ViolationFinding]:
        """Evaluate `repository` against `policies`.

        Policies without a registered evaluator are skipped with a warning.
        Evaluator exceptions are logged and yield no finding for that policy.

        Args:
            repository: Live repository metadata.
            policies: Configured policies, in declaration order.

        Returns:
            Findings in policy declaration order.
        """
        findings: list[ViolationFinding] = []
        for policy in policies:
            evaluator = self._registry.get(policy.policy_type)
            if evaluator is None:
                logger.warning(
                    "No evaluator registered for policy type, skipping",
                    policy_type=policy.policy_type,
                    repository=repository.full_name,
                )
                continue

            try:
                finding = await evaluator.evaluate(repository)
            except Exception as exc:
                logger.error(
                    "Policy evaluator failed",
                    policy_type=policy.policy_type,
                    repository=repository.full_name,
                    error=str(exc),
                    exc_info=True,
                )
                continue

            if finding is not None:
                # Record the key as configured so it matches the stored policy row
                findings.append(ViolationFinding(policy_type=policy.policy_type, details=finding.details))
        return findings
