"""SpecVault - Services"""
