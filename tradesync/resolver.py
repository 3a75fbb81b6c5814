import logging
from typing import List, Optional, Tuple

from .errors import AllSourcesExhausted, ProviderFetchError
from .models import MarketSnapshot
from .providers import DataSourceProvider


class DataSourceResolver:
    """
    Tries market-data providers strictly one after another, in priority order,
    and returns the first snapshot obtained. Individual provider failures are
    logged and kept in `last_errors`; only total exhaustion reaches the caller.
    """
    def __init__(self, providers: List[DataSourceProvider], logger: logging.Logger):
        self.providers: List[DataSourceProvider] = list(providers)
        self.logger = logger
        self.last_used: Optional[str] = None
        self.last_errors: List[ProviderFetchError] = []

    async def resolve(self) -> Tuple[MarketSnapshot, str]:
        self.last_errors = []
        self.logger.info("🔄 Resolving market data...")

        for provider in list(self.providers):
            name = provider.name()
            try:
                snapshot = await provider.fetch_data()
            except ProviderFetchError as e:
                self.logger.warning(f"   ❌ {name:<15} | {e.reason}")
                self.last_errors.append(e)
                continue
            except Exception as e:
                self.logger.error(f"   ❌ {name:<15} | UNEXPECTED: {e!r}")
                self.last_errors.append(ProviderFetchError(name, repr(e)))
                continue

            self.last_used = name
            self.logger.info(f"   ✅ {name:<15} | Price: {snapshot.price}")
            return snapshot, name

        self.logger.error(f"💥 All {len(self.providers)} market data sources failed")
        raise AllSourcesExhausted()

    def _terminal_index(self) -> Optional[int]:
        if self.providers and self.providers[-1].terminal:
            return len(self.providers) - 1
        return None

    def add_provider(self, provider: DataSourceProvider):
        """Inserts right before the terminal fallback so it stays last."""
        idx = self._terminal_index()
        if idx is None:
            self.providers.append(provider)
        else:
            self.providers.insert(idx, provider)

    def remove_provider(self, name: str):
        self.providers = [p for p in self.providers if p.name() != name]

    def available_providers(self) -> List[str]:
        return [p.name() for p in self.providers]
