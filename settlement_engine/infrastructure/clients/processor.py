"""Payment processor HTTP client with bounded retry on transient failures"""

import asyncio
import logging
import httpx
from settlement_engine.config import settings
from settlement_engine.domain.models import ChargeResult
from settlement_engine.infrastructure.observability.metrics import (
    processor_latency_histogram,
    processor_failure_counter,
)

logger = logging.getLogger(__name__)

DEFINITIVE_FAILURE_CODES = {402, 422}


class PaymentProcessorClient:
    """Client for the external payment processor"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.processor_api_base
        self.timeout = settings.http_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.processor_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.processor_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    async def charge(self, amount_minor: int, currency: str, method: str, idempotency_key: str) -> ChargeResult:
        """
        Move money for one settlement.

        The processor deduplicates on idempotency_key (the settlement id), so
        retrying the same key never double-charges.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ... up to max_retries attempts
        - Retries on 5xx errors and network failures only
        - A timeout is a definitive failure ("processor timeout"), never retried
        - 402/422 or a "failed" body is a definitive decline

        Returns:
            ChargeResult; this method does not raise for processor outcomes
        """
        payload = {
            "amount_minor": amount_minor,
            "currency": currency,
            "method": method,
            "idempotency_key": idempotency_key,
        }
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while True:
                try:
                    with processor_latency_histogram.time():
                        response = await client.post(
                            f"{self.base_url}/charges",
                            json=payload,
                            headers={"Idempotency-Key": idempotency_key},
                        )

                    if response.status_code in DEFINITIVE_FAILURE_CODES:
                        processor_failure_counter.labels(kind="declined").inc()
                        return ChargeResult.failed(self._reason(response, "payment declined"))

                    response.raise_for_status()
                    data = response.json()

                    if data.get("status") == "succeeded":
                        return ChargeResult.succeeded(str(data["transaction_ref"]))

                    processor_failure_counter.labels(kind="declined").inc()
                    return ChargeResult.failed(data.get("reason") or "payment declined")

                except httpx.TimeoutException:
                    processor_failure_counter.labels(kind="timeout").inc()
                    logger.warning("Processor timeout", extra={"idempotency_key": idempotency_key})
                    return ChargeResult.failed("processor timeout")

                except httpx.HTTPStatusError as e:
                    if e.response.status_code < 500:
                        processor_failure_counter.labels(kind="declined").inc()
                        return ChargeResult.failed(self._reason(e.response, f"processor rejected request ({e.response.status_code})"))
                    last_error = f"processor error {e.response.status_code}"

                except httpx.TransportError as e:
                    last_error = f"processor unreachable: {e.__class__.__name__}"

                except (KeyError, ValueError, TypeError) as e:
                    processor_failure_counter.labels(kind="invalid_response").inc()
                    return ChargeResult.failed(f"invalid processor response: {e}")

                attempt += 1
                processor_failure_counter.labels(kind="transport").inc()
                logger.warning(
                    "Processor call failed",
                    extra={"idempotency_key": idempotency_key, "attempt": attempt, "error": last_error},
                )
                if attempt >= self.max_retries:
                    return ChargeResult.failed(last_error)

                backoff = self.backoff_base * (2 ** (attempt - 1))
                await asyncio.sleep(backoff)

    @staticmethod
    def _reason(response: httpx.Response, default: str) -> str:
        try:
            return response.json().get("reason") or default
        except ValueError:
            return default
