"""Config package for Usage Rollup."""
