from book_pipeline.pipeline.retry import RetryPolicy, with_retry

__all__ = ["RetryPolicy", "with_retry"]
