"""
M-Pesa Payment Service
Daraja API client for STK push (Lipa na M-Pesa Online) payments and
transaction status queries.

Every public method returns a result dataclass; transport and provider
errors are logged and folded into the result instead of raised.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from config import Config
from models import TransactionStatus
from utils.helpers import normalize_phone_number, mask_phone

logger = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time (UTC+3, no DST)
EAT = timezone(timedelta(hours=3))

# STK query ResultCode -> failure message; 0 means completed
RESULT_CODE_MESSAGES = {
    1032: "Transaction was cancelled by user",
    1037: "Transaction timeout - user did not complete payment",
    1001: "Insufficient funds in account",
}

MAX_ACCOUNT_REFERENCE_LENGTH = 12
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class MpesaAPIError(Exception):
    """Non-2xx or unparseable response from the Daraja API"""

    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[Dict] = None):
        self.status = status
        self.payload = payload or {}
        super().__init__(message)


@dataclass
class PaymentInitiation:
    """Result of an STK push request"""
    success: bool
    message: str
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class VerificationResult:
    """Result of an STK push status query

    success reports whether the provider gave an answer; status is the
    payment outcome (completed / failed / pending).
    """
    success: bool
    status: str
    message: str
    receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_definitive(self) -> bool:
        return self.success and self.status in (
            TransactionStatus.COMPLETED.value,
            TransactionStatus.FAILED.value,
        )


class PaymentService:
    """M-Pesa Daraja client"""

    def __init__(self, config: Config, http_session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.base_url = config.mpesa_base_url
        self.timeout = aiohttp.ClientTimeout(total=config.MPESA_TIMEOUT_SECONDS)
        self._session = http_session
        self._owns_session = http_session is None
        self._sleep = sleep
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def clear_access_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry"""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        credentials = f"{self.config.consumer_key}:{self.config.consumer_secret}"
        auth = base64.b64encode(credentials.encode()).decode()
        url = f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"

        session = await self._get_session()
        async with session.get(url, headers={"Authorization": f"Basic {auth}"}, timeout=self.timeout) as response:
            data = await response.json(content_type=None)
            if response.status != 200 or not data.get("access_token"):
                raise MpesaAPIError("Failed to obtain M-Pesa access token", response.status, data)

        expires_in = int(data.get("expires_in", 3599))
        self._access_token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("✅ MPESA: Access token refreshed")
        return self._access_token

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        session = await self._get_session()
        async with session.post(f"{self.base_url}{endpoint}", json=payload, headers=headers,
                                timeout=self.timeout) as response:
            data = await response.json(content_type=None)
            if response.status == 401:
                # Token revoked early; next call fetches a new one
                self.clear_access_token()
            if response.status >= 400:
                message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {response.status}"
                raise MpesaAPIError(message, response.status, data)
            return data

    def _timestamp(self) -> str:
        return datetime.now(EAT).strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.config.business_short_code}{self.config.pass_key}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate_payment_request(phone_number: str, amount: int, account_reference: str) -> Optional[str]:
        """Error message for an invalid request, or None"""
        if not phone_number or not phone_number.strip():
            return "Phone number is required"
        if normalize_phone_number(phone_number) is None:
            return "Invalid Kenyan phone number format"
        if not amount or amount <= 0:
            return "Amount must be greater than zero"
        if not account_reference or not account_reference.strip():
            return "Account reference is required"
        if len(account_reference) > MAX_ACCOUNT_REFERENCE_LENGTH:
            return f"Account reference must be {MAX_ACCOUNT_REFERENCE_LENGTH} characters or less"
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initiate_payment(self, phone_number: str, amount: int, account_reference: str,
                               description: Optional[str] = None) -> PaymentInitiation:
        """Send an STK push prompt to the customer's phone"""
        validation_error = self.validate_payment_request(phone_number, amount, account_reference)
        if validation_error:
            logger.error(f"❌ MPESA: Payment validation failed: {validation_error}")
            return PaymentInitiation(success=False, message=validation_error, error="VALIDATION_ERROR")

        phone = normalize_phone_number(phone_number)
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.config.business_short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": self.config.business_short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description or f"Payment for {account_reference}",
        }

        logger.info(f"🔄 MPESA: Initiating STK push to {mask_phone(phone)} for KES {amount} ({account_reference})")

        try:
            data = await self._post("/mpesa/stkpush/v1/processrequest", payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, MpesaAPIError, ValueError) as e:
            logger.error(f"❌ MPESA: STK push to {mask_phone(phone)} failed: {type(e).__name__}: {e}")
            return PaymentInitiation(
                success=False,
                message="Failed to process payment request. Please try again.",
                error="PAYMENT_PROCESSING_ERROR",
            )

        if str(data.get("ResponseCode")) == "0":
            logger.info(
                f"✅ MPESA: STK push accepted (merchant={data.get('MerchantRequestID')}, "
                f"checkout={data.get('CheckoutRequestID')})"
            )
            return PaymentInitiation(
                success=True,
                message=data.get("CustomerMessage") or "Payment request sent successfully",
                merchant_request_id=data.get("MerchantRequestID"),
                checkout_request_id=data.get("CheckoutRequestID"),
            )

        logger.error(
            f"❌ MPESA: STK push rejected (code={data.get('ResponseCode')}): {data.get('ResponseDescription')}"
        )
        return PaymentInitiation(
            success=False,
            message=data.get("ResponseDescription") or "Payment request failed",
            error="STK_PUSH_FAILED",
        )

    async def verify_transaction(self, checkout_request_id: str) -> VerificationResult:
        """Query the provider for the outcome of one STK push"""
        if not checkout_request_id or not checkout_request_id.strip():
            return VerificationResult(
                success=False,
                status=TransactionStatus.FAILED.value,
                message="Checkout request ID is required",
                error="INVALID_REQUEST_ID",
            )

        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.config.business_short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            data = await self._post("/mpesa/stkpushquery/v1/query", payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, MpesaAPIError, ValueError) as e:
            logger.error(f"❌ MPESA: Status query for {checkout_request_id} failed: {type(e).__name__}: {e}")
            return VerificationResult(
                success=False,
                status=TransactionStatus.PENDING.value,
                message="Failed to verify transaction status. Please try again.",
                error="VERIFICATION_ERROR",
            )

        if str(data.get("ResponseCode")) != "0":
            logger.error(
                f"❌ MPESA: Status query for {checkout_request_id} returned "
                f"code={data.get('ResponseCode')}: {data.get('ResponseDescription')}"
            )
            return VerificationResult(
                success=False,
                status=TransactionStatus.PENDING.value,
                message=data.get("ResponseDescription") or "Failed to verify transaction status",
                error="VERIFICATION_QUERY_FAILED",
            )

        return self.map_result_code(checkout_request_id, data.get("ResultCode"), data.get("ResultDesc"))

    @staticmethod
    def map_result_code(checkout_request_id: str, raw_code: Any, result_desc: Optional[str]) -> VerificationResult:
        try:
            result_code = int(raw_code)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ MPESA: Unparseable ResultCode {raw_code!r} for {checkout_request_id}")
            return VerificationResult(
                success=False,
                status=TransactionStatus.PENDING.value,
                message="Provider returned an unreadable result code",
                error="VERIFICATION_QUERY_FAILED",
            )

        if result_code == 0:
            logger.info(f"✅ MPESA: Transaction {checkout_request_id} completed")
            return VerificationResult(
                success=True,
                status=TransactionStatus.COMPLETED.value,
                message="Transaction completed successfully",
                result_code=result_code,
            )

        message = RESULT_CODE_MESSAGES.get(result_code) or result_desc or "Transaction failed"
        logger.info(f"🔄 MPESA: Transaction {checkout_request_id} failed (code={result_code}): {message}")
        return VerificationResult(
            success=True,
            status=TransactionStatus.FAILED.value,
            message=message,
            result_code=result_code,
        )

    async def poll_transaction_status(self, checkout_request_id: str, max_attempts: int = 3) -> VerificationResult:
        """
        Query until a definitive result or max_attempts is reached.

        Waits 1s, 2s, 4s ... (capped at 5s) between inconclusive attempts and
        returns the last inconclusive result rather than raising.
        """
        last_result: Optional[VerificationResult] = None

        for attempt in range(1, max_attempts + 1):
            result = await self.verify_transaction(checkout_request_id)
            if result.is_definitive or result.error == "INVALID_REQUEST_ID":
                return result
            last_result = result

            if attempt < max_attempts:
                delay = min(2 ** (attempt - 1), 5)
                logger.info(
                    f"🔄 MPESA: Verification attempt {attempt}/{max_attempts} for {checkout_request_id} "
                    f"inconclusive, retrying in {delay}s"
                )
                await self._sleep(delay)

        return last_result or VerificationResult(
            success=False,
            status=TransactionStatus.PENDING.value,
            message="Transaction status unknown after retries",
            error="UNKNOWN_STATUS",
        )
