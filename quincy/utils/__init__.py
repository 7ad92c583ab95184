"""Helpers for external commands, task cancellation and logging."""