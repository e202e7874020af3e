from shieldagent.server.auth import AuthorizedKeys, load_host_key
from shieldagent.server.session import AgentServer, AgentSession

__all__ = ["AgentServer", "AgentSession", "AuthorizedKeys", "load_host_key"]
