"""Actility ThingPark adapter for the external registry port.

This adapter implements IExternalRegistry against the ThingPark device
API. Devices are identified on the hub by their ThingPark ``name``; the
ThingPark reference (``ref``) and LoRaWAN provisioning properties travel
as hub twin tags.

Wire conventions:
- Listing is 1-based (``pageIndex=1`` is the first page) and answers 404
  past the last page.
- Deletion looks the device up by EUI, then deletes it by reference.
"""

import base64
import logging
import secrets
from typing import TYPE_CHECKING, Any

from ...api.auth import DEFAULT_TOKEN_TTL_SECONDS, ClientCredentials, TokenCache
from ...api.client import RegistryHttpClient
from ...api.exceptions import ConflictError, NotFoundError, PermanentValidationError
from ...api.resilience import OperationResult
from ..domain.entities import ChangeKind, DeviceRecord, DeviceStatus, ExternalDevicePage
from ..domain.ports import IExternalRegistry
from .external_registry import register_external_registry

if TYPE_CHECKING:
    from ...config import SyncSettings

logger = logging.getLogger(__name__)

REQUIRED_PROPERTIES = [
    "EUI",
    "activationType",
    "deviceProfileId",
    "applicationEUI",
    "applicationKey",
]

EUI_LENGTH = 16
SYMMETRIC_KEY_BYTES = 32


def generate_symmetric_key(length: int = SYMMETRIC_KEY_BYTES) -> str:
    return base64.b64encode(secrets.token_bytes(length)).decode("ascii")


class ActilityRegistry(IExternalRegistry):
    """ThingPark device registry.

    Use as an async context manager so the underlying HTTP session is
    opened and closed with the adapter:

        async with ActilityRegistry(credentials, devices_uri, cache) as registry:
            page = await registry.list_page(0)
    """

    name = "actility"

    def __init__(
        self,
        credentials: ClientCredentials,
        devices_uri: str,
        token_cache: TokenCache,
        token_ttl: float = DEFAULT_TOKEN_TTL_SECONDS,
        client: RegistryHttpClient | None = None,
    ):
        """Initialize the adapter.

        Args:
            credentials: OAuth2 client credentials for the ThingPark API
            devices_uri: Absolute URL of the devices collection
            token_cache: Shared token cache
            token_ttl: Validity applied to fetched tokens
            client: Pre-built HTTP client (tests); otherwise created here
        """
        self.credentials = credentials
        self.devices_uri = devices_uri.rstrip("/")
        self.token_cache = token_cache
        self.token_ttl = token_ttl
        self.client = client or RegistryHttpClient(
            self._get_token,
            on_unauthorized=self._drop_token,
        )

    async def __aenter__(self) -> "ActilityRegistry":
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.client.__aexit__(exc_type, exc_val, exc_tb)

    async def _get_token(self) -> str:
        return await self.token_cache.get(
            self.credentials.token_url,
            self.credentials,
            ttl=self.token_ttl,
        )

    def _drop_token(self) -> None:
        self.token_cache.invalidate(self.credentials.token_url)

    # ----------------------------------------
    # Listing
    # ----------------------------------------

    async def list_page(self, page_index: int) -> ExternalDevicePage:
        try:
            body = await self.client.get(self.devices_uri, params={"pageIndex": page_index + 1})
        except NotFoundError:
            logger.debug(f"ThingPark page {page_index + 1} not found, listing exhausted")
            return ExternalDevicePage(page_index=page_index, records=[], has_more=False)

        records = list(body or [])
        return ExternalDevicePage(page_index=page_index, records=records, has_more=True)

    # ----------------------------------------
    # Writes
    # ----------------------------------------

    async def create_device(self, device_id: str, properties: dict[str, str]) -> OperationResult:
        payload = {"name": device_id, **properties}
        try:
            body = await self.client.post(self.devices_uri, json_body=payload)
        except ConflictError:
            return OperationResult.noop(f"Device {device_id} already exists in ThingPark")
        except Exception as e:
            return OperationResult.from_exception(e)

        logger.info(f"Created ThingPark device {device_id}")
        return OperationResult.success(body)

    async def delete_device(self, device: DeviceRecord) -> OperationResult:
        eui = device.tags.get("EUI")
        if not eui:
            return OperationResult.permanent(
                f"Device {device.id} has no EUI tag",
                error_type="PermanentValidationError",
            )

        try:
            matches = await self.client.get(self.devices_uri, params={"deviceEUI": eui})
        except NotFoundError:
            return OperationResult.noop(f"No ThingPark device with EUI {eui}")
        except Exception as e:
            return OperationResult.from_exception(e)

        matches = list(matches or [])
        if not matches:
            return OperationResult.noop(f"No ThingPark device with EUI {eui}")
        if len(matches) > 1:
            return OperationResult.permanent(
                f"Get device by EUI {eui} returned {len(matches)} devices, expected 1 device",
                error_type="AmbiguousDevice",
            )

        ref = matches[0].get("ref")
        if not ref:
            return OperationResult.permanent(f"ThingPark device with EUI {eui} has no ref")

        try:
            await self.client.delete(f"{self.devices_uri}/{ref}")
        except NotFoundError:
            return OperationResult.noop(f"ThingPark device {ref} already deleted")
        except Exception as e:
            return OperationResult.from_exception(e)

        logger.info(f"Deleted ThingPark device {ref} (hub device {device.id})")
        return OperationResult.success({"ref": ref})

    # ----------------------------------------
    # Mapping
    # ----------------------------------------

    def extract_device_id(self, record: dict[str, Any]) -> str:
        return str(record["name"])

    def required_properties(self) -> list[str]:
        return list(REQUIRED_PROPERTIES)

    def validate_properties(self, properties: dict[str, str]) -> None:
        if "EUI" not in properties:
            raise PermanentValidationError("Property EUI not found", field="EUI")

        eui = properties["EUI"] or ""
        if len(eui) != EUI_LENGTH:
            raise PermanentValidationError(
                f"Property EUI should have {EUI_LENGTH} characters. Value: {eui}. Length: {len(eui)}",
                field="EUI",
            )

    def to_hub_device(self, record: dict[str, Any]) -> DeviceRecord:
        tags = {
            prop: str(record[prop])
            for prop in REQUIRED_PROPERTIES
            if record.get(prop) is not None
        }
        if record.get("ref") is not None:
            tags["ref"] = str(record["ref"])

        return DeviceRecord(
            id=self.extract_device_id(record),
            tags=tags,
            status=DeviceStatus.ENABLED,
            change_kind=ChangeKind.CREATE,
            authentication={
                "symmetricKey": {
                    "primaryKey": generate_symmetric_key(),
                    "secondaryKey": generate_symmetric_key(),
                }
            },
        )


@register_external_registry("actility")
def create_actility_registry(
    settings: "SyncSettings",
    token_cache: TokenCache,
    **_: Any,
) -> ActilityRegistry:
    """Build the adapter from settings.

    Raises:
        ConfigurationError: If any ACTILITY_API_* setting is missing.
    """
    settings.require_actility()
    return ActilityRegistry(
        credentials=ClientCredentials(
            token_url=settings.actility_token_uri,
            client_id=settings.actility_client_id,
            client_secret=settings.actility_client_secret,
        ),
        devices_uri=settings.actility_devices_uri,
        token_cache=token_cache,
        token_ttl=settings.external_token_ttl_seconds,
    )


__all__ = ["ActilityRegistry", "REQUIRED_PROPERTIES", "create_actility_registry"]
