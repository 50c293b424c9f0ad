"""Read-only lookups the fan-out needs: platform admins and sellers."""

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from migma_backend.schemas.orders import Seller


class Directory(ABC):
    @abstractmethod
    async def list_admin_emails(self) -> list[str]:
        pass

    @abstractmethod
    async def get_seller(self, seller_id: str) -> Optional[Seller]:
        pass


class StaticDirectory(Directory):
    """Fixed admin list and sellers; used without a database and in tests."""

    def __init__(self, admin_emails: Iterable[str] = (), sellers: Iterable[Seller] = ()):
        self._admins = [email for email in admin_emails if email]
        self._sellers = {seller.seller_id: seller for seller in sellers}

    async def list_admin_emails(self) -> list[str]:
        return list(self._admins)

    async def get_seller(self, seller_id: str) -> Optional[Seller]:
        return self._sellers.get(seller_id)
