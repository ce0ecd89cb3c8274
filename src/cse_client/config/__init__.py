"""Configuration for the CSE client."""
