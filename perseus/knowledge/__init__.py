from perseus.knowledge.base import KnowledgeBase, KnowledgeEntry
from perseus.knowledge.sql import SqlKnowledgeStore

__all__ = ["KnowledgeBase", "KnowledgeEntry", "SqlKnowledgeStore"]
