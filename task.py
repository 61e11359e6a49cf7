import click

from pilot.cli import pilot_group
from util.log import set_up_loggers, set_up_warnings
from util.workspace import make_standard_pilot_workspace


@click.group()
@click.option(
    "--verbose",
    is_flag=True,
    help="Also print the info messages of each planning cycle to the console.",
)
@click.pass_context
def task(ctx: click.Context, verbose: bool) -> None:
    """Self-driving database planner"""
    pilot_workspace = make_standard_pilot_workspace()
    ctx.obj = pilot_workspace

    log_path = pilot_workspace.pilot_this_run_path
    set_up_loggers(log_path, verbose=verbose)
    set_up_warnings(log_path)


if __name__ == "__main__":
    task.add_command(pilot_group)
    task()
