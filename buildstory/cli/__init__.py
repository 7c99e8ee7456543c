"""
CLI for BuildStory
"""
