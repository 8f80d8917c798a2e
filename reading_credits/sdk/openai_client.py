"""
Guarded reading client.

Charges an account before asking OpenAI for reading text and, by
default, credits the charge back when no usable text comes out.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.errors import InsufficientCredits, LedgerUnavailable, ReadingGenerationFailed
from ..core.service import CreditService, get_service

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadingResult:
    """Generated reading text with the balance left after the charge."""
    text: str
    feature_key: str
    new_balance: int
    request_id: Optional[str] = None


class GuardedReadingClient:
    """OpenAI chat client that spends reading credits.
    
    Flow: debit, then generate, then (on failure) refund. The debit is
    committed before the model is called, so a crash between the two
    leaves the account charged; refunds are the caller's compensation.
    """
    
    def __init__(
        self,
        model: str,
        service: Optional[CreditService] = None,
        refund_on_failure: bool = True
    ):
        """Initialize guarded reading client.
        
        Args:
            model: OpenAI model name (required)
            service: Credit service (defaults to the process-wide one)
            refund_on_failure: Credit the cost back when generation fails
            
        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        
        self.model = model
        self.service = service or get_service()
        self.refund_on_failure = refund_on_failure
        self.client = OpenAI()
    
    def read(
        self,
        account_id: str,
        feature_key: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> ReadingResult:
        """Charge for and generate one reading.
        
        Args:
            account_id: Account paying for the reading
            feature_key: Reading mode being charged
            messages: Chat messages for the model (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters
            
        Returns:
            ReadingResult with the generated text
            
        Raises:
            ValueError: If messages is empty
            InvalidFeature: If the feature key is not priced
            InsufficientCredits: If the balance does not cover the cost;
                the model is not called
            ReadingGenerationFailed: If the model call fails or returns
                no text after a granted debit
            LedgerUnavailable: If the debit could not be applied
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        
        debit = self.service.debit(account_id, feature_key)
        if not debit.granted:
            raise InsufficientCredits(debit.new_balance, debit.cost)
        
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception as exc:
            self._compensate(account_id, feature_key, f"generation error: {exc}", exc)
        
        text = self._extract_text(response)
        if not text:
            self._compensate(account_id, feature_key, "generation returned no text")
        
        return ReadingResult(
            text=text,
            feature_key=feature_key,
            new_balance=debit.new_balance,
            request_id=getattr(response, "id", None)
        )
    
    @staticmethod
    def _extract_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        content = getattr(choices[0].message, "content", None)
        if not isinstance(content, str):
            return ""
        return content.strip()
    
    def _compensate(
        self,
        account_id: str,
        feature_key: str,
        reason: str,
        cause: Optional[BaseException] = None
    ) -> None:
        """Refund if configured, then raise ReadingGenerationFailed.
        
        A refund that cannot be applied is reported as ``refunded=False``
        with the ledger error as the cause.
        """
        refunded = False
        if self.refund_on_failure:
            try:
                self.service.refund(account_id, feature_key, note=f"refund: {reason}")
            except LedgerUnavailable as exc:
                log.error(
                    "reading.refund_failed user=%s feature=%s reason=%s error=%s",
                    account_id, feature_key, reason, exc
                )
                raise ReadingGenerationFailed(reason, refunded=False) from exc
            refunded = True
        log.warning(
            "reading.generation_failed user=%s feature=%s refunded=%s reason=%s",
            account_id, feature_key, refunded, reason
        )
        raise ReadingGenerationFailed(reason, refunded=refunded) from cause
