from .backend import InMemoryStore, KeyValueStore, StoreError
from .dynamodb import DynamoDBStore

__all__ = ["KeyValueStore", "InMemoryStore", "DynamoDBStore", "StoreError"]
