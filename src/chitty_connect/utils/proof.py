"""ChittyProof client and the proof minting queue.

Sealing a fact enqueues a proof job; the queue worker mints the proof with
ChittyProof and records it on the fact in ChittyLedger.
"""

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from chitty_connect.mcp.upstream import fetch

logger = logging.getLogger("chitty-connect.utils.proof")

DEFAULT_PROOF_URL = "https://proof.chitty.cc"


@dataclass(frozen=True)
class ProofError:
    """A failed ChittyProof call. Status 0 means the request never completed."""

    status: int
    message: str


@dataclass(frozen=True)
class ProofExport:
    """Rendered proof document."""

    body: bytes
    content_type: str = "application/pdf"


class ProofClient:
    """Client for the ChittyProof API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str,
        base_url: str = DEFAULT_PROOF_URL,
    ) -> None:
        if not token:
            raise ValueError("CHITTY_PROOF_TOKEN is not configured")
        self.http_client = http_client
        self._token = token
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_env(
        cls,
        http_client: httpx.AsyncClient,
        env: Mapping[str, str],
        base_url: str = DEFAULT_PROOF_URL,
    ) -> "ProofClient | None":
        """Create a client when CHITTY_PROOF_TOKEN is present in ``env``."""
        token = env.get("CHITTY_PROOF_TOKEN")
        if not token:
            logger.info("CHITTY_PROOF_TOKEN not set; proof minting and PDF export disabled")
            return None
        return cls(http_client, token, base_url)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "X-Source-Service": "chittyconnect",
        }

    async def mint_proof(
        self,
        fact_id: str,
        fact_text: str | None,
        evidence_chain: list[Any],
        signer_chitty_id: str | None,
    ) -> dict[str, Any] | ProofError:
        """Mint a proof for a sealed fact.

        Returns:
            The minted proof record, or a ProofError
        """
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/v1/proofs/mint",
                headers=self._headers(),
                json={
                    "type": "fact",
                    "content": {
                        "fact_id": fact_id,
                        "fact_text": fact_text,
                        "evidence_chain": evidence_chain,
                    },
                    "signer": signer_chitty_id,
                    "chain": True,
                },
            )
        except httpx.HTTPError as e:
            return ProofError(status=0, message=str(e))

        if not response.is_success:
            return ProofError(status=response.status_code, message=response.text)
        try:
            return response.json()
        except ValueError:
            return ProofError(
                status=response.status_code, message="ChittyProof returned non-JSON"
            )

    async def export_pdf(self, proof_id: str) -> ProofExport | ProofError:
        """Render a proof as a PDF document."""
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/v1/proofs/{quote(proof_id, safe='')}/export",
                headers=self._headers(),
                json={"format": "pdx"},
            )
        except httpx.HTTPError as e:
            return ProofError(status=0, message=str(e))

        if not response.is_success:
            return ProofError(status=response.status_code, message=response.text)
        return ProofExport(
            body=response.content,
            content_type=response.headers.get("content-type", "application/pdf"),
        )


class ProofQueue(Protocol):
    """Queue accepting proof jobs. ``send`` raises when the job is not accepted."""

    async def send(self, payload: dict[str, Any]) -> None: ...


class ProofJobConsumer:
    """Mints the proof for one job and records it in ChittyLedger."""

    def __init__(
        self,
        proof_client: ProofClient,
        http_client: httpx.AsyncClient,
        ledger_url: str = "https://ledger.chitty.cc",
    ) -> None:
        self.proof_client = proof_client
        self.http_client = http_client
        self.ledger_url = ledger_url.rstrip("/")

    async def process(self, payload: dict[str, Any]) -> bool:
        """Process a proof job.

        Returns:
            True when the proof was minted and recorded, False when the job
            should be retried
        """
        fact_id = payload.get("fact_id")
        proof = await self.proof_client.mint_proof(
            fact_id=fact_id,
            fact_text=payload.get("fact_text"),
            evidence_chain=payload.get("evidence_chain") or [],
            signer_chitty_id=payload.get("signer_chitty_id"),
        )
        if isinstance(proof, ProofError):
            logger.error(f"Proof mint failed for {fact_id}: {proof.message}")
            return False

        response = await fetch(
            self.http_client,
            "PATCH",
            f"{self.ledger_url}/api/facts/{quote(str(fact_id), safe='')}/proof",
            json_body={
                "proof_id": proof.get("proof_id"),
                "blockchain_record_id": proof.get("chain_anchor_id"),
                "verification_url": proof.get("verification_url"),
                "proof_score": proof.get("score"),
                "proof_status": "MINTED",
            },
        )
        if not response.ok:
            logger.error(f"Ledger proof update failed for {fact_id}: {response.status_code}")
            return False

        logger.info(f"Proof minted for {fact_id}: {proof.get('proof_id')}")
        return True


@dataclass
class ProofJob:
    payload: dict[str, Any]
    attempts: int = 0


class AsyncProofQueue:
    """In-process proof queue drained by a background worker task."""

    def __init__(
        self,
        consumer: ProofJobConsumer,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        maxsize: int = 1000,
    ) -> None:
        self.consumer = consumer
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[ProofJob] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self._closed = False

    async def send(self, payload: dict[str, Any]) -> None:
        """Enqueue a proof job.

        Raises:
            RuntimeError: If the queue has been stopped
            asyncio.QueueFull: If the queue is at capacity
        """
        if self._closed:
            raise RuntimeError("Proof queue is closed")
        self._queue.put_nowait(ProofJob(payload=dict(payload)))
        logger.debug(f"Queued proof job for {payload.get('fact_id')}")

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="proof-queue-worker")
            logger.info("Proof queue worker started")

    async def stop(self) -> None:
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("Proof queue worker stopped")

    async def join(self) -> None:
        """Wait until every queued job has been processed or dropped."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: ProofJob) -> None:
        fact_id = job.payload.get("fact_id")
        try:
            done = await self.consumer.process(job.payload)
        except Exception as e:
            logger.error(f"Error processing proof job for {fact_id}: {e}", exc_info=True)
            done = False

        if done:
            return

        job.attempts += 1
        if job.attempts >= self.max_attempts:
            logger.error(
                f"Dropping proof job for {fact_id} after {job.attempts} attempts; "
                f"manual proof minting required"
            )
            return

        await asyncio.sleep(self.retry_delay * job.attempts)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error(f"Proof queue full; dropping retry for {fact_id}")
