"""Conversion stages and the pipeline coordinator.

Import ``convert`` from ``iso_converter.conversion.coordinator``; this package
module stays free of stage imports so settings can depend on the exceptions
without a cycle.
"""
