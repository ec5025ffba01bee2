"""Store module initialization"""

from vendhub_fiscal.store.json_store import JsonFileFiscalStore
from vendhub_fiscal.store.memory import InMemoryFiscalStore

__all__ = [
    "InMemoryFiscalStore",
    "JsonFileFiscalStore",
]
