"""
Main CLI entry point for BuildStory
"""

import click
from .bandit import bandit_group, timeouts_group
from .classify import classify_command


@click.group()
@click.version_option(version='0.1.0')
def cli():
    """
    BuildStory - persona-targeted storyboards with Thompson Sampling

    Operator commands for inspecting and maintaining section bandits.
    """
    pass


# Register command groups
cli.add_command(bandit_group)
cli.add_command(timeouts_group)
cli.add_command(classify_command)


if __name__ == '__main__':
    cli()
