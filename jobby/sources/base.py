from abc import ABC, abstractmethod
from typing import Any

from jobby.models import QueryDescriptor


class SearchClient(ABC):
    @abstractmethod
    def search(self, query: QueryDescriptor) -> list[dict[str, Any]]:
        """Raw listings for one query; raises SearchError or QuotaExceededError."""
