"""Cli package for Usage Rollup."""
