"""
Knowledge Blueprint — read-only staff knowledge base.

Articles change only through approved KNOWLEDGE_UPDATE requests.

Endpoints:
    GET /api/v1/knowledge            ?q=&page=&per_page=   (bodies omitted)
    GET /api/v1/knowledge/<slug>
"""

from flask import Blueprint, jsonify, request

from campusdesk.core.exceptions import NotFoundError
from campusdesk.models.school import KnowledgeArticle
from campusdesk.services import records
from campusdesk.utils.helpers import page_args, paginate_envelope

knowledge_bp = Blueprint("knowledge", __name__, url_prefix="/api/v1")


@knowledge_bp.route("/knowledge", methods=["GET"])
def list_articles():
    page, per_page = page_args()
    q = KnowledgeArticle.query
    term = (request.args.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(KnowledgeArticle.title.ilike(like) | KnowledgeArticle.slug.ilike(like))
    q = q.order_by(KnowledgeArticle.updated_at.desc(), KnowledgeArticle.slug.asc())
    return jsonify(paginate_envelope(q, page, per_page,
                                     serializer=lambda a: a.to_dict(include_body=False)))


@knowledge_bp.route("/knowledge/<slug>", methods=["GET"])
def get_article(slug):
    article = records.get_article(slug)
    if article is None:
        raise NotFoundError(resource="KnowledgeArticle", resource_id=slug)
    return jsonify(article.to_dict())
