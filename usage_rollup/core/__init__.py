"""
Core modules for Usage Rollup.

This package contains the key scheme, range resolution, normalization,
pricing and cost rollup behind the usage aggregator.
"""
