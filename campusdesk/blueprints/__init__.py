"""
CampusDesk
Blueprint registry.

    chat_bp       /api/v1/chat/sessions, /api/v1/chat/turns
    approval_bp   /api/v1/chat/approvals
    student_bp    /api/v1/students
    knowledge_bp  /api/v1/knowledge
    audit_bp      /api/v1/audit
    health_bp     /api/v1/health
"""
