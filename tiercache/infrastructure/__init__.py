"""
Infrastructure layer: concrete cache tiers and store adapters.
"""
