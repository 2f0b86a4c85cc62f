"""
Lark AI relay.

This package contains:
- settings: configuration read from the environment / .env
- logging_config: shared logging setup
- errors: error bodies and domain exceptions
- dedup: processed-event tracking
- session_resolver: session key derivation and upstream session binding
- context_store: conversation window storage, eviction and prompt building
- commands: /help and /clear handling
- upstream: AI backends (OpenAI-compatible chat, Flowise)
- lark_client: reply sender for the Lark open platform
- relay_service: the request flow tying the above together
- storage: redis and SQL backends (db builds the SQL engine)
- auth: verification and admin token checks
- routes, context_routes: FastAPI app factory and HTTP endpoints
"""
