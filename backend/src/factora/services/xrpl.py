"""
XRPL implementation of the marketplace ledger.

Based on the official XRPL Python NFT tutorials:
https://xrpl.org/docs/tutorials/python/nfts/mint-and-burn-nfts

Listing model:
- Each listed invoice is an NFT held by the marketplace account; its URI
  carries the invoice id
- The listing price is a single sell offer on that NFT, priced in drops
- A purchase is an NFTokenAcceptOffer signed by the investor's wallet and
  submitted here; the call returns once the transaction is validated
- A sold invoice is found through the marketplace account history
  (the accept transaction that moved the token out)
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.transaction import submit_and_wait
from xrpl.constants import XRPLException
from xrpl.models import (
    AccountNFTs,
    AccountTx,
    NFTokenAcceptOffer,
    NFTokenCancelOffer,
    NFTokenCreateOffer,
    NFTokenCreateOfferFlag,
    NFTokenMint,
    NFTSellOffers,
    Transaction,
)
from xrpl.models.response import Response
from xrpl.transaction import XRPLReliableSubmissionException
from xrpl.utils import drops_to_xrp, ripple_time_to_datetime, xrp_to_drops
from xrpl.wallet import Wallet

from factora.domain.errors import LedgerError, LedgerErrorKind

from .ledger import (
    LedgerClient,
    LedgerReceipt,
    OnChainInvoice,
    PurchaseOrder,
    classify_ledger_failure,
)

logger = logging.getLogger(__name__)


class XRPLNetwork(Enum):
    """Supported XRPL networks."""
    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"


# JSON-RPC endpoints (more reliable than WebSocket for quick operations)
NETWORK_URLS = {
    XRPLNetwork.MAINNET: "https://xrplcluster.com",
    XRPLNetwork.TESTNET: "https://s.altnet.rippletest.net:51234",
    XRPLNetwork.DEVNET: "https://s.devnet.rippletest.net:51234",
}

XRP_QUANTUM = Decimal("0.000001")
USD_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class ListingMetadata:
    """
    NFT metadata for a listed invoice.

    Kept minimal: the URI field is limited to 256 bytes and the invoice
    details live off-chain.
    """
    invoice_id: str

    def to_json(self) -> str:
        """Serialize to JSON for NFT URI."""
        return json.dumps(
            {"schema": "FACTORA_v1", "invoice_id": self.invoice_id},
            separators=(",", ":"),
        )

    def to_hex(self) -> str:
        """Convert to hex-encoded URI for XRPL."""
        return self.to_json().encode("utf-8").hex().upper()

    @staticmethod
    def invoice_id_from_uri(uri_hex: str | None) -> str | None:
        """Recover the invoice id from an NFT URI, None if it is not ours."""
        if not uri_hex:
            return None
        try:
            data = json.loads(bytes.fromhex(uri_hex).decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict) or data.get("schema") != "FACTORA_v1":
            return None
        return data.get("invoice_id")


class XRPLLedgerClient(LedgerClient):
    """
    Marketplace ledger on the XRP Ledger.

    Example:
        ledger = XRPLLedgerClient(
            network=XRPLNetwork.TESTNET,
            wallet_seed="sEdVW...",
            xrp_price_usd=Decimal("2.00"),
        )
        tx_hash = await ledger.list_invoice(invoice.id, Decimal("9000"))
    """

    # NFT flags
    FLAG_TRANSFERABLE = 8  # tfTransferable

    # Listings carry no resale royalty
    DEFAULT_TRANSFER_FEE = 0

    # Taxon for marketplace invoice NFTs
    INVOICE_TAXON = 1

    # Account history pages scanned when looking for a past sale
    HISTORY_PAGE_LIMIT = 10
    HISTORY_PAGE_SIZE = 200

    def __init__(
        self,
        network: XRPLNetwork = XRPLNetwork.TESTNET,
        wallet_seed: str | None = None,
        xrp_price_usd: Decimal = Decimal("2.00"),
        custom_url: str | None = None,
    ) -> None:
        """
        Initialize the XRPL ledger client.

        Args:
            network: XRPL network to connect to
            wallet_seed: Seed of the marketplace account that holds listings
            xrp_price_usd: Fixed USD price of one XRP for price conversion
            custom_url: Override network URL (for testing)
        """
        self.network = network
        self.url = custom_url or NETWORK_URLS[network]
        self.xrp_price_usd = xrp_price_usd
        self._wallet = Wallet.from_seed(wallet_seed) if wallet_seed else None
        self._client: AsyncJsonRpcClient | None = None

    def _get_client(self) -> AsyncJsonRpcClient:
        """Get or create JSON-RPC client."""
        if self._client is None:
            self._client = AsyncJsonRpcClient(self.url)
        return self._client

    def _marketplace_wallet(self) -> Wallet:
        if self._wallet is None:
            raise LedgerError(LedgerErrorKind.UNKNOWN, "Marketplace wallet is not configured")
        return self._wallet

    # ------------------------------------------------------------------
    # Price conversion
    # ------------------------------------------------------------------

    def usd_to_drops(self, price: Decimal) -> str:
        """Convert a USD listing price to an XRP amount in drops."""
        xrp = (price / self.xrp_price_usd).quantize(XRP_QUANTUM, rounding=ROUND_HALF_UP)
        return xrp_to_drops(xrp)

    def drops_to_usd(self, drops: str) -> Decimal:
        return (drops_to_xrp(drops) * self.xrp_price_usd).quantize(USD_QUANTUM, rounding=ROUND_HALF_UP)

    # ------------------------------------------------------------------
    # LedgerClient surface
    # ------------------------------------------------------------------

    async def list_invoice(self, invoice_id: str, price: Decimal) -> str:
        wallet = self._marketplace_wallet()
        token = await self._find_listed_token(invoice_id)

        if token is None:
            if await self._find_sale(invoice_id) is not None:
                raise LedgerError(
                    LedgerErrorKind.ALREADY_SOLD_ON_CHAIN,
                    f"Invoice {invoice_id} was already sold on the ledger",
                )
            mint_tx = NFTokenMint(
                account=wallet.classic_address,
                uri=ListingMetadata(invoice_id).to_hex(),
                flags=self.FLAG_TRANSFERABLE,
                transfer_fee=self.DEFAULT_TRANSFER_FEE,
                nftoken_taxon=self.INVOICE_TAXON,
            )
            result = (await self._submit(mint_tx, wallet)).result
            token_id = result.get("meta", {}).get("nftoken_id") or self._extract_nft_id(result)
            if not token_id:
                raise LedgerError(LedgerErrorKind.UNKNOWN, "Minted listing token could not be identified")
            logger.info(f"Minted listing token {token_id} for invoice {invoice_id}")
        else:
            token_id = token["NFTokenID"]
            stale = [offer["nft_offer_index"] for offer in await self._sell_offers(token_id)]
            if stale:
                cancel_tx = NFTokenCancelOffer(account=wallet.classic_address, nftoken_offers=stale)
                await self._submit(cancel_tx, wallet)
                logger.info(f"Cancelled {len(stale)} stale offer(s) for invoice {invoice_id}")

        offer_tx = NFTokenCreateOffer(
            account=wallet.classic_address,
            nftoken_id=token_id,
            amount=self.usd_to_drops(price),
            flags=NFTokenCreateOfferFlag.TF_SELL_NFTOKEN,
        )
        result = (await self._submit(offer_tx, wallet)).result
        tx_hash = result.get("hash", "")
        logger.info(f"InvoiceListed: invoice={invoice_id} price={price} tx={tx_hash}")
        return tx_hash

    async def purchase_invoice(self, order: PurchaseOrder) -> LedgerReceipt:
        if not order.signed_transaction:
            raise LedgerError(
                LedgerErrorKind.USER_REJECTED,
                "Purchase was not signed by the investor wallet",
            )

        try:
            tx = Transaction.from_blob(order.signed_transaction)
        except (XRPLException, ValueError, KeyError) as e:
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Signed purchase transaction could not be decoded",
                detail=str(e),
            ) from e

        if not isinstance(tx, NFTokenAcceptOffer) or not tx.nftoken_sell_offer:
            raise LedgerError(LedgerErrorKind.UNKNOWN, "Signed transaction is not an NFTokenAcceptOffer")
        if order.buyer_wallet and tx.account != order.buyer_wallet:
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Purchase was signed by a different account than the investor's wallet",
            )

        offer = await self._current_offer(order.invoice_id)
        if offer is None:
            raise LedgerError(
                LedgerErrorKind.ALREADY_SOLD_ON_CHAIN,
                f"Invoice {order.invoice_id} is not available on the ledger",
            )
        if tx.nftoken_sell_offer != offer["nft_offer_index"]:
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Signed purchase references a stale listing; prepare the purchase again",
            )
        if str(offer["amount"]) != self.usd_to_drops(order.price):
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Listing price on the ledger does not match the invoice price",
                context={"ledger_amount": str(offer["amount"])},
            )

        logger.info(f"Submitting purchase of invoice {order.invoice_id} from {tx.account}")
        response = await self._submit(tx)
        tx_hash = response.result.get("hash", "")
        logger.info(f"InvoicePurchased: invoice={order.invoice_id} buyer={tx.account} tx={tx_hash}")

        return LedgerReceipt(
            invoice_id=order.invoice_id,
            tx_hash=tx_hash,
            buyer=tx.account,
            price=order.price,
            timestamp=datetime.now(timezone.utc),
        )

    async def get_invoice(self, invoice_id: str) -> OnChainInvoice | None:
        wallet = self._marketplace_wallet()
        token = await self._find_listed_token(invoice_id)
        if token is not None:
            offers = await self._sell_offers(token["NFTokenID"])
            price = self.drops_to_usd(str(offers[0]["amount"])) if offers else None
            return OnChainInvoice(
                invoice_id=invoice_id,
                owner=wallet.classic_address,
                price=price,
                is_sold=False,
            )

        sale = await self._find_sale(invoice_id)
        if sale is None:
            return None
        return OnChainInvoice(
            invoice_id=invoice_id,
            owner=wallet.classic_address,
            price=None,
            is_sold=True,
            buyer=sale["buyer"],
            purchase_time=sale["purchase_time"],
        )

    async def is_invoice_available(self, invoice_id: str) -> bool:
        return await self._current_offer(invoice_id) is not None

    async def is_listed_at(self, invoice_id: str, price: Decimal) -> bool:
        offer = await self._current_offer(invoice_id)
        return offer is not None and str(offer["amount"]) == self.usd_to_drops(price)

    async def prepare_purchase(
        self,
        invoice_id: str,
        price: Decimal,
        buyer_wallet: str,
    ) -> dict[str, Any]:
        """
        Prepare an NFTokenAcceptOffer payload for client-side signing.

        The investor's wallet signs this payload; the signed blob comes back
        with the buy request.
        """
        offer = await self._current_offer(invoice_id)
        if offer is None:
            raise LedgerError(
                LedgerErrorKind.ALREADY_SOLD_ON_CHAIN,
                f"Invoice {invoice_id} is not available on the ledger",
            )
        drops = self.usd_to_drops(price)
        if str(offer["amount"]) != drops:
            raise LedgerError(
                LedgerErrorKind.UNKNOWN,
                "Listing price on the ledger does not match the invoice price",
                context={"ledger_amount": str(offer["amount"])},
            )
        return {
            "TransactionType": "NFTokenAcceptOffer",
            "Account": buyer_wallet,
            "NFTokenSellOffer": offer["nft_offer_index"],
            "AmountDrops": drops,
        }

    # ------------------------------------------------------------------
    # Ledger queries
    # ------------------------------------------------------------------

    async def _submit(self, tx: Transaction, wallet: Wallet | None = None) -> Response:
        """Submit (signing with wallet if given) and wait for validation."""
        tx_name = type(tx).__name__
        try:
            response = await submit_and_wait(tx, self._get_client(), wallet)
        except XRPLReliableSubmissionException as e:
            kind = classify_ledger_failure(str(e))
            logger.warning(f"{tx_name} failed on ledger ({kind.value}): {e}")
            raise LedgerError(kind, f"Ledger rejected {tx_name}", detail=str(e)) from e
        except XRPLException as e:
            logger.exception(f"{tx_name} submission failed")
            raise LedgerError(LedgerErrorKind.UNKNOWN, "Ledger submission failed", detail=str(e)) from e

        engine_result = response.result.get("meta", {}).get("TransactionResult")
        if engine_result != "tesSUCCESS":
            kind = classify_ledger_failure(str(engine_result))
            raise LedgerError(kind, f"Ledger rejected {tx_name}", detail=str(engine_result))
        return response

    async def _request(self, request: Any) -> dict[str, Any] | None:
        """Run a read request; None when the ledger reports the object missing."""
        try:
            response = await self._get_client().request(request)
        except XRPLException as e:
            raise LedgerError(LedgerErrorKind.UNKNOWN, "Ledger query failed", detail=str(e)) from e
        if response.is_successful():
            return response.result
        if response.result.get("error") in ("objectNotFound", "actNotFound"):
            return None
        raise LedgerError(
            LedgerErrorKind.UNKNOWN,
            "Ledger query failed",
            detail=str(response.result.get("error_message") or response.result.get("error")),
        )

    async def _find_listed_token(self, invoice_id: str) -> dict[str, Any] | None:
        """Find the listing NFT still held by the marketplace account."""
        wallet = self._marketplace_wallet()
        marker = None
        while True:
            result = await self._request(
                AccountNFTs(account=wallet.classic_address, marker=marker, limit=400)
            )
            if result is None:
                return None
            for nft in result.get("account_nfts", []):
                if ListingMetadata.invoice_id_from_uri(nft.get("URI")) == invoice_id:
                    return nft
            marker = result.get("marker")
            if marker is None:
                return None

    async def _sell_offers(self, token_id: str) -> list[dict[str, Any]]:
        result = await self._request(NFTSellOffers(nft_id=token_id))
        return result.get("offers", []) if result else []

    async def _current_offer(self, invoice_id: str) -> dict[str, Any] | None:
        token = await self._find_listed_token(invoice_id)
        if token is None:
            return None
        offers = await self._sell_offers(token["NFTokenID"])
        return offers[0] if offers else None

    async def _find_sale(self, invoice_id: str) -> dict[str, Any] | None:
        """
        Find the accept transaction that sold an invoice's listing token.

        History is newest first, so accepts are seen before the mint that
        identifies the token.
        """
        wallet = self._marketplace_wallet()
        uri_hex = ListingMetadata(invoice_id).to_hex()
        accepts: dict[str, dict[str, Any]] = {}
        marker = None

        for _ in range(self.HISTORY_PAGE_LIMIT):
            result = await self._request(AccountTx(
                account=wallet.classic_address,
                marker=marker,
                limit=self.HISTORY_PAGE_SIZE,
            ))
            if result is None:
                return None
            for entry in result.get("transactions", []):
                tx = entry.get("tx_json") or entry.get("tx") or {}
                meta = entry.get("meta") or {}
                if not isinstance(meta, dict) or meta.get("TransactionResult") != "tesSUCCESS":
                    continue
                tx_type = tx.get("TransactionType")
                token_id = meta.get("nftoken_id")
                if tx_type == "NFTokenAcceptOffer" and token_id:
                    accepts[token_id] = {
                        "buyer": tx.get("Account"),
                        "tx_hash": entry.get("hash") or tx.get("hash"),
                        "purchase_time": self._entry_time(entry, tx),
                    }
                elif tx_type == "NFTokenMint" and str(tx.get("URI", "")).upper() == uri_hex:
                    return accepts.get(token_id) if token_id else None
            marker = result.get("marker")
            if marker is None:
                break
        return None

    @staticmethod
    def _entry_time(entry: dict[str, Any], tx: dict[str, Any]) -> datetime | None:
        if tx.get("date") is not None:
            return ripple_time_to_datetime(int(tx["date"]))
        close_time = entry.get("close_time_iso")
        if close_time:
            return datetime.fromisoformat(close_time.replace("Z", "+00:00"))
        return None

    def _extract_nft_id(self, tx_result: dict[str, Any]) -> str | None:
        """Extract NFT ID from transaction metadata (servers without nftoken_id)."""
        try:
            affected_nodes = tx_result.get("meta", {}).get("AffectedNodes", [])

            for node in affected_nodes:
                # Look for created NFTokenPage
                created = node.get("CreatedNode", {})
                if created.get("LedgerEntryType") == "NFTokenPage":
                    nftokens = created.get("NewFields", {}).get("NFTokens", [])
                    if nftokens:
                        return nftokens[-1].get("NFToken", {}).get("NFTokenID")

                # Look for modified NFTokenPage
                modified = node.get("ModifiedNode", {})
                if modified.get("LedgerEntryType") == "NFTokenPage":
                    final_nftokens = modified.get("FinalFields", {}).get("NFTokens", [])
                    prev_nftokens = modified.get("PreviousFields", {}).get("NFTokens", [])

                    # Find the new token (in final but not in previous)
                    prev_ids = {t.get("NFToken", {}).get("NFTokenID") for t in prev_nftokens}
                    for token in final_nftokens:
                        token_id = token.get("NFToken", {}).get("NFTokenID")
                        if token_id not in prev_ids:
                            return token_id

            return None

        except (AttributeError, TypeError) as e:
            logger.warning(f"Could not extract NFT ID: {e}")
            return None
