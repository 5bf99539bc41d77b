from perseus.messaging.messenger import AgentMessenger, wait_for_reply

__all__ = ["AgentMessenger", "wait_for_reply"]
