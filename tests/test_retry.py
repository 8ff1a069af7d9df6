"""Unit tests for thinktree/utils/retry.py."""

from __future__ import annotations

import pytest

from thinktree.utils.retry import retry_with_backoff


class TestRetryWithBackoff:
    """Test retry_with_backoff decorator."""

    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        """Test a call that succeeds is not repeated."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, base_delay=0.01)
        async def always_succeeds() -> str:
            nonlocal call_count
            call_count += 1
            return "success"

        assert await always_succeeds() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        """Test a transient failure is retried."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, base_delay=0.01)
        async def fails_then_succeeds() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("Temporary failure")
            return "success"

        assert await fails_then_succeeds() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_max_attempts_exceeded(self) -> None:
        """Test the last error is re-raised after all attempts."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, base_delay=0.01)
        async def always_fails() -> str:
            nonlocal call_count
            call_count += 1
            raise ValueError("Persistent failure")

        with pytest.raises(ValueError, match="Persistent failure"):
            await always_fails()
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_specific_exception_type(self) -> None:
        """Test exceptions outside retry_on are raised immediately."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, base_delay=0.01, retry_on=(ConnectionError,))
        async def raises_type_error() -> str:
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retried")

        with pytest.raises(TypeError):
            await raises_type_error()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_preserves_args(self) -> None:
        """Test arguments pass through unchanged."""

        @retry_with_backoff(max_attempts=2, base_delay=0.01)
        async def echo_args(a: int, b: str, c: int = 10) -> tuple[int, str, int]:
            return (a, b, c)

        assert await echo_args(1, "hello", c=20) == (1, "hello", 20)

    def test_sync_function_rejected(self) -> None:
        """Test decorating a plain function raises TypeError."""
        with pytest.raises(TypeError, match="async"):

            @retry_with_backoff()
            def plain() -> None:
                return None

    def test_preserves_name(self) -> None:
        """Test functools.wraps keeps the wrapped name."""

        @retry_with_backoff()
        async def named() -> None:
            return None

        assert named.__name__ == "named"
