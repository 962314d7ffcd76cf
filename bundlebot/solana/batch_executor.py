"""
Chunked parallel execution of independent transactions.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from loguru import logger

from bundlebot.solana.confirmation import ConfirmationWatcher
from bundlebot.solana.models import BatchItem, BatchResult, BatchSummary, SignatureConfirmation
from bundlebot.solana.submitter import TransactionSubmitter

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


class ParallelBatchExecutor:
    """
    Runs independent submissions and confirmations concurrently in ordered chunks.
    """

    DEFAULT_CHUNK_SIZE = 20
    # Pause between chunks in seconds
    INTER_CHUNK_DELAY = 0.5

    def __init__(self,
                 submitter: TransactionSubmitter,
                 watcher: ConfirmationWatcher,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 inter_chunk_delay: float = INTER_CHUNK_DELAY,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Initialize the batch executor.

        Args:
            submitter: Submitter used for every item
            watcher: Watcher used by confirm_many
            chunk_size: Default number of concurrent items per chunk
            inter_chunk_delay: Seconds to wait between chunks
            sleep: Awaitable sleep used for the inter-chunk delay
        """
        self.submitter = submitter
        self.watcher = watcher
        self.chunk_size = chunk_size
        self.inter_chunk_delay = inter_chunk_delay
        self._sleep = sleep

    async def _run_chunks(self, items: Sequence[T], chunk_size: int,
                          run_one: Callable[[T], Awaitable[Any]]) -> List[Any]:
        chunks = chunked(items, chunk_size)
        results: List[Any] = []
        for index, chunk in enumerate(chunks):
            if index > 0 and self.inter_chunk_delay > 0:
                await self._sleep(self.inter_chunk_delay)
            logger.debug(f"Running chunk {index + 1}/{len(chunks)} ({len(chunk)} items)")
            results.extend(await asyncio.gather(*(run_one(item) for item in chunk)))
        return results

    async def _submit_item(self, item: BatchItem) -> BatchResult:
        try:
            signature = await self.submitter.submit(item.request, item.signers, item.options)
            return BatchResult(request_id=item.request_id, success=True, signature=signature)
        except Exception as e:
            logger.warning(f"Batch item {item.request_id} failed: {e}")
            signature = getattr(e, "last_signature", None)
            return BatchResult(request_id=item.request_id, success=False, signature=signature, error=str(e))

    async def execute(self, items: Sequence[BatchItem], chunk_size: Optional[int] = None) -> List[BatchResult]:
        """
        Submit every item, concurrently within each chunk.

        Args:
            items: Independent batch items
            chunk_size: Override of the default chunk size

        Returns:
            One BatchResult per item, in input order
        """
        size = chunk_size or self.chunk_size
        logger.info(f"Executing batch of {len(items)} items in chunks of {size}")

        results = await self._run_chunks(items, size, self._submit_item)

        summary = self.summarize(results)
        logger.info(
            f"Batch finished: {summary.succeeded}/{summary.total} succeeded",
            extra={"succeeded": summary.succeeded, "failed": summary.failed}
        )
        return results

    async def confirm_many(self,
                           signatures: Sequence[str],
                           commitment: str = "confirmed",
                           timeout_ms: Optional[int] = None,
                           chunk_size: Optional[int] = None) -> List[SignatureConfirmation]:
        """
        Confirm independent signatures, concurrently within each chunk.

        Returns:
            One SignatureConfirmation per signature, in input order
        """
        async def confirm_one(signature: str) -> SignatureConfirmation:
            try:
                result = await self.watcher.watch(signature, commitment=commitment, timeout_ms=timeout_ms)
            except Exception as e:
                logger.warning(f"Confirmation of {signature[:8]}... raised: {e}")
                return SignatureConfirmation(signature=signature, confirmed=False, error=str(e))
            return SignatureConfirmation(signature=signature, confirmed=result.confirmed, error=result.error)

        return await self._run_chunks(signatures, chunk_size or self.chunk_size, confirm_one)

    @staticmethod
    def summarize(results: Sequence[BatchResult]) -> BatchSummary:
        return BatchSummary.from_results(results)
