"""Escrow marketplace server: storage, domain managers and HTTP API."""
