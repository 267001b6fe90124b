"""
CampusDesk
Role-aware capability policy and system preamble.

GENERAL   → knowledge answers + read-only queries
ADMIN     → + dataChange / knowledgeUpdate proposals
APPROVER  → + review of the pending approval queue
"""

from campusdesk.auth import Actor
from campusdesk.chat.prompt_registry import get_registry
from campusdesk.chat.tools import TOOLS, ToolSpec
from campusdesk.models.school import KnowledgeArticle
from campusdesk.models.vocab import STUDENT_STATUS

SCHOOL_NAME = "CampusDesk Japanese Language School"
MAX_CONTEXT_ARTICLES = 10

_ROLE_TEMPLATES = {
    "GENERAL": "role_general",
    "ADMIN": "role_admin",
    "APPROVER": "role_approver",
}


def is_permitted(actor: Actor, tool: ToolSpec) -> bool:
    return actor.has_role(tool.min_role)


def allowed_tools(actor: Actor) -> list[ToolSpec]:
    return [tool for tool in TOOLS.values() if is_permitted(actor, tool)]


def tool_definitions(actor: Actor) -> list[dict]:
    return [tool.definition() for tool in allowed_tools(actor)]


def _knowledge_block(articles) -> str:
    return "\n\n".join(f"### {a.title} ({a.slug})\n{a.body}" for a in articles)


def build_preamble(actor: Actor, include_knowledge: bool = True) -> str:
    """Base prompt + role context (+ knowledge articles as plain context)."""
    registry = get_registry()
    parts = [
        registry.render_system(
            "assistant",
            school_name=SCHOOL_NAME,
            student_statuses="\n".join(f"- {v} = {STUDENT_STATUS.label(v)}" for v in STUDENT_STATUS),
        ),
        registry.render_system(_ROLE_TEMPLATES.get(actor.role, "role_general"), user_id=actor.user_id),
    ]
    if include_knowledge:
        articles = (
            KnowledgeArticle.query.order_by(KnowledgeArticle.updated_at.desc())
            .limit(MAX_CONTEXT_ARTICLES).all()
        )
        if articles:
            parts.append(registry.render_system("knowledge_context",
                                                articles=_knowledge_block(articles)))
    return "\n\n".join(p for p in parts if p)
