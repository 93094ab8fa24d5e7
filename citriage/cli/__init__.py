"""CLI for citriage."""

import click

from citriage import __version__


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """citriage: CI failure triage for agent worktrees

    Gathers failing CI logs and PR comments since the last push into bounded
    reports, and watches branches to deliver them to a tmux pane.
    """
    pass


# Import and register command modules
from citriage.cli import gather
from citriage.cli import watch

main.add_command(gather.gather_ci)
main.add_command(gather.gather_comments)
main.add_command(watch.watch)


if __name__ == "__main__":
    main()
