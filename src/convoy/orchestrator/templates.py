"""Role templates used to synthesize new agents.

A template is the "DNA" for one role: the name prefix given to spawned
agents, their base instructions, skills, advisory territory, capability tags,
and the bracket tags that mark a task title as belonging to the role.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import structlog
import yaml

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RoleTemplate:
    role: str
    name_prefix: str
    base_prompt: str
    skills: tuple[str, ...] = ()
    territory: tuple[str, ...] = ()
    capability_tags: tuple[str, ...] = ()
    task_tags: tuple[str, ...] = ()

    def matches_title(self, title: str) -> bool:
        """Whether a task title carries one of this role's bracket tags."""
        title = title.lower()
        return any(tag in title for tag in self.task_tags)


TemplateTable = Mapping[str, RoleTemplate]


DEFAULT_TEMPLATES: TemplateTable = MappingProxyType(
    {
        "planner": RoleTemplate(
            role="planner",
            name_prefix="MAX",
            base_prompt=(
                "You are a planner. Plan, dispatch, coordinate, track progress.\n"
                "You do NOT write code. You manage the team."
            ),
            skills=("planning", "tracking", "coordination", "estimation"),
            territory=("docs/", "DISPATCH.md"),
            capability_tags=("musk", "von_neumann"),
            task_tags=("[phase", "[planning]"),
        ),
        "backend": RoleTemplate(
            role="backend",
            name_prefix="SAM",
            base_prompt=(
                "You are a backend engineer. Build the data and API layer.\n"
                "Territory: server/, scripts/, lib/\n"
                "DO NOT touch: app/, components/"
            ),
            skills=("python", "api", "schema", "database"),
            territory=("server/", "scripts/", "lib/"),
            capability_tags=("von_neumann", "shannon"),
            task_tags=("[backend]", "[api]"),
        ),
        "frontend": RoleTemplate(
            role="frontend",
            name_prefix="LEO",
            base_prompt=(
                "You are a frontend engineer. Build the UI components.\n"
                "Territory: app/, components/\n"
                "DO NOT touch: server/, scripts/"
            ),
            skills=("react", "typescript", "css", "ui"),
            territory=("app/", "components/"),
            capability_tags=("feynman", "musk"),
            task_tags=("[ui]", "[frontend]"),
        ),
        "qa": RoleTemplate(
            role="qa",
            name_prefix="QUINN",
            base_prompt=(
                "You are a QA engineer. Test code, find bugs, ensure quality.\n"
                "You CAN read all files to understand context."
            ),
            skills=("testing", "code-review", "bug-hunting"),
            territory=("tests/", "e2e/"),
            capability_tags=("von_neumann", "feynman"),
            task_tags=("[qa]", "[test]"),
        ),
        "devops": RoleTemplate(
            role="devops",
            name_prefix="ALEX",
            base_prompt=(
                "You are a DevOps engineer. CI/CD, deployment, infrastructure.\n"
                "Territory: .github/, deployment configs"
            ),
            skills=("ci-cd", "docker", "github-actions"),
            territory=(".github/", "deploy/"),
            capability_tags=("shannon", "musk"),
            task_tags=("[devops]", "[infra]", "[ci]"),
        ),
        "content": RoleTemplate(
            role="content",
            name_prefix="ELLA",
            base_prompt=(
                "You are a content creator. Write posts, documentation, communications.\n"
                "Territory: docs/, content/"
            ),
            skills=("writing", "storytelling", "documentation"),
            territory=("docs/", "content/"),
            capability_tags=("feynman", "shannon"),
            task_tags=("[content]", "[docs]"),
        ),
    }
)


def load_templates(path: Path | str) -> TemplateTable:
    """Load a template table from YAML.

    The file maps role names to template fields::

        backend:
          name_prefix: SAM
          base_prompt: "You are a backend engineer."
          skills: [python, api]
          task_tags: ["[backend]", "[api]"]

    Raises:
        ValueError: If a template is missing ``name_prefix`` or ``base_prompt``
    """
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    templates = {}
    for role, fields in raw.items():
        role = str(role).lower()
        fields = fields or {}
        if "name_prefix" not in fields or "base_prompt" not in fields:
            raise ValueError(f"Template '{role}' needs name_prefix and base_prompt")

        templates[role] = RoleTemplate(
            role=role,
            name_prefix=str(fields["name_prefix"]).upper(),
            base_prompt=str(fields["base_prompt"]),
            skills=tuple(fields.get("skills") or ()),
            territory=tuple(fields.get("territory") or ()),
            capability_tags=tuple(fields.get("capability_tags") or ()),
            task_tags=tuple(t.lower() for t in fields.get("task_tags") or ()),
        )

    logger.info("templates_loaded", path=str(path), roles=sorted(templates))
    return MappingProxyType(templates)


def get_templates(templates_file: Path | str | None = None) -> TemplateTable:
    """Templates from ``templates_file`` if given, else the built-in table."""
    if templates_file:
        return load_templates(templates_file)
    return DEFAULT_TEMPLATES
