"""
Pipeline Context
================
Process-wide handle to the external collaborators (OCR engine, LLM client).
Built once at startup and passed into AmountPipeline; collaborators are created
lazily on first use, at most once even under concurrent first use, and are then
shared read-only across requests.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional

from .errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)

_UNSET = object()


def _default_ocr_factory(cfg: Dict[str, Any]):
    from .ocr import OCREngine
    return OCREngine.from_config(cfg)


def _default_llm_factory(cfg: Dict[str, Any]):
    from .llm import LLMClient, get_api_key
    if not get_api_key():
        logger.warning("LLM disabled: no API key configured, using heuristic extraction only")
        return None
    return LLMClient.from_config(cfg)


class PipelineContext:
    """
    Holds lazily-initialized collaborators and the executor that bounds calls to them.

    Features:
    - Single-flight initialization per collaborator (lock + double check)
    - Timeout-bounded collaborator calls on a small thread pool
    - Injectable factories for alternate engines and tests
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        ocr_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        llm_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        max_workers: int = 4,
    ):
        """
        Initialize the context.

        Args:
            config: Merged configuration dict (see config_loader.get_config)
            ocr_factory: Callable(config) -> object with extract_text(bytes)
            llm_factory: Callable(config) -> object with process_document(text), or None
            max_workers: Threads available for bounded collaborator calls
        """
        self.config = config or {}
        self._ocr_factory = ocr_factory or _default_ocr_factory
        self._llm_factory = llm_factory or _default_llm_factory
        self._ocr = _UNSET
        self._llm = _UNSET
        self._init_lock = threading.Lock()
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def ocr(self):
        """The OCR engine, created on first access."""
        if self._ocr is _UNSET:
            with self._init_lock:
                if self._ocr is _UNSET:
                    logger.info("Initializing OCR engine")
                    self._ocr = self._ocr_factory(self.config)
        return self._ocr

    @property
    def llm(self):
        """The LLM client, created on first access; None when unavailable."""
        if self._llm is _UNSET:
            with self._init_lock:
                if self._llm is _UNSET:
                    logger.info("Initializing LLM client")
                    try:
                        self._llm = self._llm_factory(self.config)
                    except Exception:
                        logger.exception("LLM client initialization failed")
                        self._llm = None
        return self._llm

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            with self._init_lock:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self._max_workers,
                        thread_name_prefix='amounts_collaborator'
                    )
        return self._executor

    def call(self, func: Callable[..., Any], *args, timeout_s: Optional[float] = None, **kwargs) -> Any:
        """
        Run a collaborator call, bounded by timeout_s when given.

        Raises:
            ExternalCollaboratorError: the call timed out
        """
        if not timeout_s:
            return func(*args, **kwargs)

        future = self._get_executor().submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout_s)
        except FutureTimeoutError as e:
            future.cancel()
            name = getattr(func, "__qualname__", repr(func))
            raise ExternalCollaboratorError(f"{name} timed out after {timeout_s}s") from e

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the executor.

        Args:
            wait: Whether to wait for in-flight collaborator calls
        """
        if self._executor is not None:
            logger.info("Shutting down collaborator executor...")
            self._executor.shutdown(wait=wait)
            self._executor = None
