"""
qMRtool: fitting, simulation and protocol optimization for quantitative MRI.
"""
__version__ = "0.1.0"
