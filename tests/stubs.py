"""
Test doubles.

ConcatSummarizer joins passages with "|", and merge appends to the
previous summary, so merge(summarize(a), b) == summarize(a + b). That
makes incremental and full recomputation directly comparable.
"""

from worldbook_context.compaction import InMemoryWorldbook, StoreError


class ConcatSummarizer:
    def __init__(self):
        self.calls: list[tuple] = []

    def summarize(self, texts):
        self.calls.append(("summarize", tuple(texts)))
        return "|".join(texts)

    def merge(self, previous_summary, new_texts):
        self.calls.append(("merge", previous_summary, tuple(new_texts)))
        if not previous_summary:
            return "|".join(new_texts)
        return "|".join([previous_summary, *new_texts])


class FlakyWorldbook(InMemoryWorldbook):
    """In-memory world book whose writes and deletes fail for selected keys."""

    def __init__(self, fail_keys=(), entries=None):
        super().__init__(entries)
        self.fail_keys = set(fail_keys)

    def write_entry(self, key, value):
        if key in self.fail_keys:
            raise StoreError(f"write refused for {key}", retryable=True)
        super().write_entry(key, value)

    def delete_entry(self, key):
        if key in self.fail_keys:
            raise StoreError(f"delete refused for {key}", retryable=True)
        super().delete_entry(key)
