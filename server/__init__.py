"""
FeatureForge Server
===================

REST control surface for auto mode.
"""
