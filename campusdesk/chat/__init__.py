"""
CampusDesk
Chat module — the human-gated change pipeline.

Submodules:
    - gateway: completion service client (provider routing, retry, cost logging)
    - prompt_registry: YAML prompt template loading
    - tools / policy: tool catalogue and role-aware preamble
    - codec: tool call → validated descriptor
    - conversation: sessions and messages
    - ledger: approval request lifecycle
    - executor: applies approved requests exactly once
    - orchestrator: runs one user turn
"""
