from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.execution.models import FeeData


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class ChainProvider(Provider):
    """Chain node access needed by the execution engine"""

    @abstractmethod
    async def get_fee_data(self) -> FeeData:
        """Current network fee data"""
        pass

    @abstractmethod
    async def estimate_gas(self, descriptor: Dict[str, Any]) -> int:
        """Gas estimate for a transaction descriptor"""
        pass

    @abstractmethod
    async def get_transaction_count(self, address: str, block_tag: str = "pending") -> int:
        """Transaction count (next nonce) for an address"""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current block height"""
        pass


class BundleRelay(Provider):
    """Bundle relay accepting ordered, signed payloads for one target block"""

    @abstractmethod
    async def simulate(
        self,
        payloads: List[str],
        target_block_hex: str,
        network_tag: str,
    ) -> Dict[str, Any]:
        """Simulate an ordered bundle against the target block"""
        pass

    @abstractmethod
    async def submit(
        self,
        payloads: List[str],
        target_block_hex: str,
        network_tag: str,
        builders: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Submit an ordered bundle for inclusion in the target block"""
        pass

    def simulation_failures(self, result: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Per-transaction failures reported in a simulation result"""
        return []
