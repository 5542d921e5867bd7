"""Transactional core for the rewards bot."""
