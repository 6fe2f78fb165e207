"""
JSON schema for the request context attached to access-log entries.

The context is free-form at the call site (middleware, jobs, tests), so it
is checked against this contract before it is written into the audit trail.
"""

ACCESS_CONTEXT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Access log context",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "ip_address": {
            "type": "string",
            "minLength": 2,
            "maxLength": 45,
            "description": "Client address, IPv4 or IPv6.",
        },
        "user_agent": {"type": "string", "maxLength": 512},
        "session_id": {"type": "string", "maxLength": 128},
        "request_id": {"type": "string", "maxLength": 128},
        "endpoint": {
            "type": "string",
            "maxLength": 256,
            "description": "Route or job name that performed the access.",
        },
    },
}
