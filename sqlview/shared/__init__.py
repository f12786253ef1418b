"""Shared configuration, logging, error and CLI helpers."""
