"""Pydantic models for the externally authored policy configuration.

The document lives in the organization's configuration repository and looks like:

    access_control:
      authorized_team: my-org/compliance-admins
    policies:
      - name: Check for AGENTS.md
        type: has_agents_md
        action: [create-issue, block-prs]
        issue_details:
          title: Missing AGENTS.md
          body: Please add an AGENTS.md file.
          labels: [compliance]
        pr_comment_details:
          message: This repository is missing AGENTS.md.
        block_prs_details:
          status_check_name: Policy Compliance Check

`action` may be a scalar or a list. It is normalized to an ordered list at
this boundary and never carried further as a scalar.
"""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_STATUS_CHECK_NAME = "Policy Compliance Check"


def normalize_action_name(action: str) -> str:
    """Canonical form of an action identifier: lower-case, hyphen separated."""
    return action.strip().lower().replace("_", "-")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class IssueDetails(_ConfigModel):
    """Parameters for the create-issue action."""

    title: str | None = None
    body: str | None = None
    labels: list[str] = Field(default_factory=list)


class PrCommentDetails(_ConfigModel):
    """Parameters for the comment-on-prs action."""

    message: str | None = None


class BlockPrsDetails(_ConfigModel):
    """Parameters for the block-prs action."""

    status_check_name: str = DEFAULT_STATUS_CHECK_NAME


class PolicyConfig(_ConfigModel):
    """One policy declaration.

    Attributes:
        name: Human-readable policy name.
        description: Optional free text.
        policy_type: Evaluator key (`type` in YAML).
        actions: Ordered action identifiers (`action` in YAML, scalar or list).
        issue_details: Optional create-issue parameters.
        pr_comment_details: Optional comment-on-prs parameters.
        block_prs_details: Optional block-prs parameters.
    """

    name: str = ""
    description: str | None = None
    policy_type: str = Field(alias="type")
    actions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("action", "actions"),
        serialization_alias="action",
    )
    issue_details: IssueDetails | None = None
    pr_comment_details: PrCommentDetails | None = None
    block_prs_details: BlockPrsDetails | None = None

    @field_validator("actions", mode="before")
    @classmethod
    def _normalize_actions(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("action must be a string or a list of strings")
        return [str(item).strip() for item in value if item is not None and str(item).strip()]

    @property
    def normalized_actions(self) -> list[str]:
        """Actions in canonical `kebab-case`, in declared order."""
        return [normalize_action_name(action) for action in self.actions]

    @property
    def status_check_name(self) -> str:
        if self.block_prs_details and self.block_prs_details.status_check_name.strip():
            return self.block_prs_details.status_check_name
        return DEFAULT_STATUS_CHECK_NAME


class AccessControlConfig(_ConfigModel):
    """Who may operate the dashboard: a single `organization/team-slug`."""

    authorized_team: str | None = None

    def parse_team(self) -> tuple[str, str] | None:
        """Split authorized_team into (organization, team_slug).

        Returns:
            The pair, or None if the value is not of the form org/slug.
        """
        if not self.authorized_team:
            return None
        parts = self.authorized_team.strip().split("/")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            return None
        return parts[0].strip(), parts[1].strip()


class AppConfig(_ConfigModel):
    """Root of the configuration document."""

    access_control: AccessControlConfig = Field(default_factory=AccessControlConfig)
    policies: list[PolicyConfig] = Field(default_factory=list)

    @field_validator("policies", mode="before")
    @classmethod
    def _null_policies(cls, value: Any) -> Any:
        return [] if value is None else value

    def find_policy(self, policy_type: str) -> PolicyConfig | None:
        """Return the first policy declared for `policy_type` (case-insensitive)."""
        wanted = policy_type.strip().lower()
        for policy in self.policies:
            if policy.policy_type.strip().lower() == wanted:
                return policy
        return None
