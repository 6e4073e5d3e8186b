"""Storage package for Usage Rollup."""
