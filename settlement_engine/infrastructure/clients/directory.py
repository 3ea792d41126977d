"""Member directory HTTP client for display names"""

import httpx
from settlement_engine.domain.models import MemberProfile
from settlement_engine.domain.exceptions import MemberDirectoryError
from settlement_engine.config import settings


class MemberDirectoryClient:
    """Read-only lookup of member display data; never used in balance math"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.member_directory_base
        self.timeout = settings.http_timeout_seconds if timeout is None else timeout
        self.transport = transport

    async def get_member(self, member_id: str) -> MemberProfile:
        """
        Fetch display name and avatar for a member.

        Raises:
            MemberDirectoryError: On timeout, HTTP errors, or invalid response
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(f"{self.base_url}/members/{member_id}")
                response.raise_for_status()
                data = response.json()

                return MemberProfile(
                    member_id=member_id,
                    display_name=data["display_name"],
                    avatar_ref=data.get("avatar_ref"),
                )

            except httpx.TimeoutException as e:
                raise MemberDirectoryError(f"Member directory timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise MemberDirectoryError(f"Member directory error: {e.response.status_code}") from e
            except httpx.TransportError as e:
                raise MemberDirectoryError(f"Member directory unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise MemberDirectoryError(f"Invalid member data from directory: {e}") from e
