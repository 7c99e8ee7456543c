"""
BuildStory - Persona-targeted storyboard decision engine

Classifies visitors into audience segments and picks, per storyboard section,
which content variant to show using Beta-Bernoulli Thompson Sampling backed
by a shared Supabase store.
"""

__version__ = "0.1.0"
__author__ = "BuildStory Team"
