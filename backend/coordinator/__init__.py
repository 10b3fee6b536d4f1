"""Charging station queue and reservation coordinator."""
