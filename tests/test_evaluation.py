"""Tests for the policy evaluation engine and the built-in evaluators."""

import pytest

from fleet_compliance.adapters.github_models import GitHubRepository
from fleet_compliance.core.config_models import PolicyConfig
from fleet_compliance.core.evaluation import (
    EvaluatorRegistry,
    PolicyEvaluationService,
    ViolationFinding,
)
from fleet_compliance.core.evaluators import (
    CatalogInfoHasOwnerEvaluator,
    RequiredFileEvaluator,
    WorkflowPermissionsEvaluator,
    build_default_registry,
)
from tests.conftest import FakeGitHubClient, make_repo


def _policy(policy_type: str) -> PolicyConfig:
    return PolicyConfig(name=policy_type, type=policy_type, action=["log-only"])


class _ExplodingEvaluator:
    policy_type = "explodes"

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        raise RuntimeError("boom")


class _AlwaysViolated:
    def __init__(self, policy_type: str) -> None:
        self.policy_type = policy_type

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        return ViolationFinding(self.policy_type, "always")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestEvaluatorRegistry:
    """Tests for explicit evaluator registration."""

    def test_duplicate_policy_type_rejected(self) -> None:
        registry = EvaluatorRegistry([_AlwaysViolated("has_agents_md")])

        with pytest.raises(ValueError, match="already registered"):
            registry.register(_AlwaysViolated("HAS_AGENTS_MD"))

    def test_lookup_is_case_insensitive(self) -> None:
        evaluator = _AlwaysViolated("has_agents_md")
        registry = EvaluatorRegistry([evaluator])

        assert registry.get("Has_Agents_MD") is evaluator
        assert registry.get("other") is None

    def test_default_registry_covers_builtin_types(self, fake_github: FakeGitHubClient) -> None:
        registry = build_default_registry(fake_github)

        assert registry.policy_types == [
            "catalog_info_has_owner",
            "correct_workflow_permissions",
            "has_agents_md",
            "has_catalog_info_yaml",
        ]


# ---------------------------------------------------------------------------
# Evaluation service
# ---------------------------------------------------------------------------


class TestPolicyEvaluationService:
    """Tests for PolicyEvaluationService.evaluate_repository()."""

    @pytest.mark.asyncio()
    async def test_failing_evaluator_is_isolated(self) -> None:
        """One evaluator raising does not hide the findings of the others."""
        registry = EvaluatorRegistry([_ExplodingEvaluator(), _AlwaysViolated("has_agents_md")])
        service = PolicyEvaluationService(registry)

        findings = await service.evaluate_repository(
            make_repo(1, "svc"),
            [_policy("explodes"), _policy("has_agents_md")],
        )

        assert findings == [ViolationFinding("has_agents_md", "always")]

    @pytest.mark.asyncio()
    async def test_unknown_policy_type_is_skipped(self) -> None:
        service = PolicyEvaluationService(EvaluatorRegistry([_AlwaysViolated("has_agents_md")]))

        findings = await service.evaluate_repository(
            make_repo(1, "svc"),
            [_policy("not_registered"), _policy("has_agents_md")],
        )

        assert [finding.policy_type for finding in findings] == ["has_agents_md"]

    @pytest.mark.asyncio()
    async def test_finding_uses_configured_policy_key(self) -> None:
        """The finding carries the key as written in the configuration."""
        service = PolicyEvaluationService(EvaluatorRegistry([_AlwaysViolated("has_agents_md")]))

        findings = await service.evaluate_repository(make_repo(1, "svc"), [_policy("Has_Agents_MD")])

        assert findings[0].policy_type == "Has_Agents_MD"


# ---------------------------------------------------------------------------
# Built-in evaluators
# ---------------------------------------------------------------------------


class TestRequiredFileEvaluator:
    """Tests for the file-presence evaluators."""

    @pytest.mark.asyncio()
    async def test_missing_file_is_violation(self, fake_github: FakeGitHubClient) -> None:
        fake_github.add_repository(make_repo(1, "svc"))
        evaluator = RequiredFileEvaluator(fake_github, "has_agents_md", "AGENTS.md")

        finding = await evaluator.evaluate(make_repo(1, "svc"))

        assert finding == ViolationFinding("has_agents_md", "AGENTS.md is missing")

    @pytest.mark.asyncio()
    async def test_present_file_is_compliant(self, fake_github: FakeGitHubClient) -> None:
        fake_github.add_repository(make_repo(1, "svc"), files={"AGENTS.md": "# Agents"})
        evaluator = RequiredFileEvaluator(fake_github, "has_agents_md", "AGENTS.md")

        assert await evaluator.evaluate(make_repo(1, "svc")) is None


class TestCatalogInfoHasOwnerEvaluator:
    """Tests for the catalog-info.yaml owner check."""

    async def _evaluate(self, fake_github: FakeGitHubClient, content: str | None) -> ViolationFinding | None:
        files = {} if content is None else {"catalog-info.yaml": content}
        fake_github.add_repository(make_repo(1, "svc"), files=files)
        return await CatalogInfoHasOwnerEvaluator(fake_github).evaluate(make_repo(1, "svc"))

    @pytest.mark.asyncio()
    async def test_owner_present_is_compliant(self, fake_github: FakeGitHubClient) -> None:
        content = "apiVersion: backstage.io/v1alpha1\nkind: Component\nspec:\n  owner: team-a\n"
        assert await self._evaluate(fake_github, content) is None

    @pytest.mark.asyncio()
    async def test_missing_file_is_not_reported(self, fake_github: FakeGitHubClient) -> None:
        assert await self._evaluate(fake_github, None) is None

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("content", "expected"),
        [
            ("", "empty"),
            ("kind: Component\n", "missing the 'spec' section"),
            ("spec: just-a-string\n", "not a mapping"),
            ("spec:\n  lifecycle: production\n", "missing 'spec.owner'"),
            ("spec:\n  owner: '   '\n", "blank 'spec.owner'"),
            ("spec:\n  owner:\n", "blank 'spec.owner'"),
            ("spec: [unclosed\n", "could not be parsed"),
        ],
    )
    async def test_invalid_documents_are_violations(
        self, fake_github: FakeGitHubClient, content: str, expected: str
    ) -> None:
        finding = await self._evaluate(fake_github, content)

        assert finding is not None
        assert finding.policy_type == "catalog_info_has_owner"
        assert expected in (finding.details or "")


class TestWorkflowPermissionsEvaluator:
    """Tests for the default workflow token permission check."""

    @pytest.mark.asyncio()
    async def test_write_permission_is_violation(self, fake_github: FakeGitHubClient) -> None:
        fake_github.workflow_permissions[1] = "write"

        finding = await WorkflowPermissionsEvaluator(fake_github).evaluate(make_repo(1, "svc"))

        assert finding is not None
        assert "'write'" in (finding.details or "")

    @pytest.mark.asyncio()
    async def test_read_permission_is_compliant(self, fake_github: FakeGitHubClient) -> None:
        fake_github.workflow_permissions[1] = "read"

        assert await WorkflowPermissionsEvaluator(fake_github).evaluate(make_repo(1, "svc")) is None

    @pytest.mark.asyncio()
    async def test_unavailable_setting_is_not_reported(self, fake_github: FakeGitHubClient) -> None:
        assert await WorkflowPermissionsEvaluator(fake_github).evaluate(make_repo(1, "svc")) is None
