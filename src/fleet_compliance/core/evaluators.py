"""Built-in policy evaluators.

- has_agents_md               : AGENTS.md must exist
- has_catalog_info_yaml       : catalog-info.yaml must exist
- catalog_info_has_owner      : catalog-info.yaml must set a non-blank spec.owner
- correct_workflow_permissions: default GITHUB_TOKEN permission must be read-only
"""

import base64
import binascii

import yaml

from fleet_compliance.adapters.github_models import GitHubRepository
from fleet_compliance.core.evaluation import EvaluatorRegistry, ViolationFinding
from fleet_compliance.core.interfaces import IGitHubClient
from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

AGENTS_MD_PATH = "AGENTS.md"
CATALOG_INFO_PATH = "catalog-info.yaml"


class RequiredFileEvaluator:
    """Violation when a file is missing from the default branch.

    Args:
        github: GitHub client.
        policy_type: Policy type key served by this instance.
        file_path: Path that must exist.
    """

    def __init__(self, github: IGitHubClient, policy_type: str, file_path: str) -> None:
        self._github = github
        self.policy_type = policy_type
        self.file_path = file_path

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        if await self._github.file_exists(repository.id, self.file_path):
            return None
        return ViolationFinding(self.policy_type, f"{self.file_path} is missing")


class CatalogInfoHasOwnerEvaluator:
    """catalog-info.yaml must carry a non-blank `spec.owner`.

    A missing file is not reported here; has_catalog_info_yaml covers it.
    An empty file, a missing or non-mapping `spec`, a missing or blank owner,
    and a file that cannot be parsed are all violations.
    """

    policy_type = "catalog_info_has_owner"

    def __init__(self, github: IGitHubClient) -> None:
        self._github = github

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        encoded = await self._github.get_file_content(repository.name, CATALOG_INFO_PATH)
        if encoded is None:
            return None

        try:
            document = yaml.safe_load(base64.b64decode(encoded).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.error(
                "Failed to parse catalog-info.yaml, the file may be malformed",
                repository=repository.full_name,
                error=str(exc),
            )
            return self._violation("catalog-info.yaml could not be parsed")

        if document is None:
            return self._violation("catalog-info.yaml is empty", repository)
        if not isinstance(document, dict) or "spec" not in document:
            return self._violation("catalog-info.yaml is missing the 'spec' section", repository)

        spec = document["spec"]
        if not isinstance(spec, dict):
            return self._violation("catalog-info.yaml 'spec' section is not a mapping", repository)
        if "owner" not in spec:
            return self._violation("catalog-info.yaml is missing 'spec.owner'", repository)

        owner = spec["owner"]
        if owner is None or not str(owner).strip():
            return self._violation("catalog-info.yaml has a blank 'spec.owner'", repository)
        return None

    def _violation(self, details: str, repository: GitHubRepository | None = None) -> ViolationFinding:
        if repository is not None:
            logger.warning(details, repository=repository.full_name)
        return ViolationFinding(self.policy_type, details)


class WorkflowPermissionsEvaluator:
    """The default workflow token permission must equal `expected`.

    An unavailable setting (Actions disabled) is not a violation.
    """

    policy_type = "correct_workflow_permissions"

    def __init__(self, github: IGitHubClient, expected: str = "read") -> None:
        self._github = github
        self._expected = expected

    async def evaluate(self, repository: GitHubRepository) -> ViolationFinding | None:
        permissions = await self._github.get_workflow_permissions(repository.id)
        if permissions is None:
            return None
        if permissions.lower() == self._expected:
            return None
        return ViolationFinding(
            self.policy_type,
            f"Default workflow permissions are '{permissions}', expected '{self._expected}'",
        )


def build_default_registry(github: IGitHubClient) -> EvaluatorRegistry:
    """Registry with every built-in evaluator."""
    return EvaluatorRegistry(
        [
            RequiredFileEvaluator(github, "has_agents_md", AGENTS_MD_PATH),
            RequiredFileEvaluator(github, "has_catalog_info_yaml", CATALOG_INFO_PATH),
            CatalogInfoHasOwnerEvaluator(github),
            WorkflowPermissionsEvaluator(github),
        ]
    )
