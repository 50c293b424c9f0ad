# gateways/wise.py
# ============================================================================
# WISE CLIENT (Gateway B)
# ============================================================================
# Profiles, quotes, recipient accounts and transfers. Authenticates with a
# static personal token or with an OAuth client-credentials exchange.
# ============================================================================

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from migma_backend.config import BankAccountConfig, WiseConfig
from migma_backend.errors import ProviderAuthError, ProviderError
from migma_backend.gateways.base import AccessToken, ProviderClient
from migma_backend.schemas.orders import CENT

PAYMENT_URL_FIELDS = ("paymentLink", "payment_url", "payinUrl", "payin_url", "paymentUrl")

DEFAULT_COUNTRY = {"aba": "US", "swift": "US", "sort_code": "GB"}


def _compact(values: dict) -> dict:
    return {key: value for key, value in values.items() if value not in (None, "")}


def build_recipient_details(bank: BankAccountConfig) -> dict:
    """`details` block of POST /v1/accounts for the configured account type."""
    bank.validate()
    address = _compact({
        "country": bank.country or DEFAULT_COUNTRY.get(bank.type),
        "state": bank.state if bank.type == "aba" else None,
        "city": bank.city,
        "postCode": bank.post_code if bank.type == "aba" else None,
        "firstLine": bank.bank_address or bank.bank_name,
    })

    if bank.type == "aba":
        details = {
            "abartn": bank.routing_number,
            "accountNumber": bank.account_number,
            "accountType": "CHECKING",
        }
    elif bank.type == "swift":
        details = {"swift": bank.swift, "accountNumber": bank.account_number}
    elif bank.type == "iban":
        details = {"iban": bank.iban}
    else:
        details = {"sortCode": bank.sort_code, "accountNumber": bank.account_number}

    return {"legalType": bank.legal_type, **details, "address": address}


def build_recipient_payload(profile_id: str, bank: BankAccountConfig) -> dict:
    return {
        "profile": profile_id,
        "currency": bank.currency,
        "type": bank.type,
        "accountHolderName": bank.account_holder_name,
        "details": build_recipient_details(bank),
    }


def find_payment_url(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for field_name in PAYMENT_URL_FIELDS:
        value = payload.get(field_name)
        if isinstance(value, str) and value.startswith("http"):
            return value
    return None


class WiseClient(ProviderClient):
    name = "wise"

    def __init__(self, config: WiseConfig, **kwargs):
        super().__init__(config.base_url, **kwargs)
        self.config = config

    async def _exchange_credentials(self) -> AccessToken:
        if self.config.personal_token:
            return AccessToken(value=self.config.personal_token)

        try:
            response = await self._client.post(
                self._url("/oauth/token"),
                data={"grant_type": "client_credentials"},
                auth=(self.config.client_id or "", self.config.client_secret or ""),
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise ProviderAuthError(self.name, f"token request failed: {e}") from e

        body = self._parse_body(response)
        if not response.is_success or not isinstance(body, dict) or not body.get("access_token"):
            raise ProviderAuthError(
                self.name,
                f"token exchange rejected: {self._error_message(response)}",
                http_status=response.status_code,
            )
        return AccessToken.from_expires_in(
            body["access_token"], body.get("expires_in", 43200), self._clock()
        )

    # =========================================================================
    # RESOURCES
    # =========================================================================

    async def get_profile_id(self) -> str:
        if self.config.profile_id:
            return self.config.profile_id
        profiles = await self.request("GET", "/v1/profiles")
        if isinstance(profiles, list) and profiles:
            return str(profiles[0]["id"])
        raise ProviderError(self.name, "No profile found in Wise account")

    async def create_quote(
        self,
        profile_id: str,
        source_currency: str,
        target_currency: str,
        target_amount: Decimal,
    ) -> dict:
        # A cent-quantized amount serializes to the same digits as its decimal string
        return await self.request(
            "POST",
            f"/v3/profiles/{profile_id}/quotes",
            json_body={
                "sourceCurrency": source_currency,
                "targetCurrency": target_currency,
                "targetAmount": float(Decimal(str(target_amount)).quantize(CENT, rounding=ROUND_HALF_UP)),
            },
        )

    async def create_recipient(self, profile_id: str, bank: BankAccountConfig) -> dict:
        return await self.request(
            "POST", "/v1/accounts", json_body=build_recipient_payload(profile_id, bank)
        )

    async def create_transfer(
        self,
        target_account: str,
        quote_uuid: str,
        customer_transaction_id: str,
        reference: Optional[str] = None,
    ) -> dict:
        body = {
            "targetAccount": target_account,
            "quoteUuid": quote_uuid,
            "customerTransactionId": customer_transaction_id,
        }
        if reference:
            body["reference"] = reference
        return await self.request("POST", "/v1/transfers", json_body=body)

    async def get_transfer(self, transfer_id: str) -> dict:
        return await self.request("GET", f"/v1/transfers/{transfer_id}")

    async def cancel_transfer(self, transfer_id: str) -> dict:
        return await self.request("PUT", f"/v1/transfers/{transfer_id}/cancel")

    async def get_transfer_payment_url(self, transfer_id: str) -> Optional[str]:
        """Payment URL from a fresh transfer read, None when Wise exposes none."""
        try:
            transfer = await self.get_transfer(transfer_id)
        except ProviderError as e:
            self._logger.warning("transfer_lookup_failed", transfer_id=transfer_id, error=str(e))
            return None
        return find_payment_url(transfer)
