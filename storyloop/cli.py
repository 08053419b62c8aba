#!/usr/bin/env python3
"""Storyloop CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from storyloop.lib import envparse
from storyloop.lib.config import load_loop_config, resolve_workdir
from storyloop.runner.errors import ConfigError
from storyloop.commands import init as cmd_init_module
from storyloop.commands import story as cmd_story_module
from storyloop.commands import status as cmd_status_module
from storyloop.commands import iterate as cmd_iterate_module
from storyloop.commands import loop as cmd_loop_module
from storyloop.commands import iterations as cmd_iterations_module


def get_workdir(args) -> Path:
    """Project directory from --dir or the current directory."""
    return resolve_workdir(args.dir or os.getcwd())


def _debug_requested(args, workdir: Path) -> bool:
    if args.verbose:
        return True
    try:
        if envparse.env_bool(dict(os.environ), "DEBUG", False):
            return True
        return load_loop_config(workdir).debug
    except (ValueError, ConfigError):
        # The command itself reports a broken loop.env
        return False


def setup_logging(args, workdir: Path) -> None:
    level = logging.DEBUG if _debug_requested(args, workdir) else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_init(args):
    return cmd_init_module.cmd_init(args, get_workdir(args))


def cmd_add_story(args):
    return cmd_story_module.cmd_add_story(args, get_workdir(args))


def cmd_edit_story(args):
    return cmd_story_module.cmd_edit_story(args, get_workdir(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_workdir(args))


def cmd_iterate(args):
    return cmd_iterate_module.cmd_iterate(args, get_workdir(args))


def cmd_loop(args):
    return cmd_loop_module.cmd_loop(args, get_workdir(args))


def cmd_iterations(args):
    return cmd_iterations_module.cmd_iterations(args, get_workdir(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='sloop', description='Run a coding agent over a PRD, one story at a time')
    parser.add_argument('--dir', '-C', help='Project directory (default: current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command')

    # sloop init
    p_init = subparsers.add_parser('init', help='Create prd.json and progress.txt')
    p_init.add_argument('--name', '-n', help='Project name (default: directory name)')
    p_init.add_argument('--description', '-d', help='Project description')
    p_init.add_argument('--gh-issues', action='store_true', default=None, help='Create a tracking issue')
    p_init.set_defaults(func=cmd_init)

    # sloop add-story
    p_add = subparsers.add_parser('add-story', help='Add a story to the PRD')
    p_add.add_argument('title', help='Story title')
    p_add.add_argument('--description', '-d', help='What to build')
    p_add.add_argument('--priority', '-p', type=float, default=10, help='Lower runs sooner (default: 10)')
    p_add.add_argument('--criteria', '-a', help='Acceptance criteria: JSON list or a single string')
    p_add.add_argument('--validation-command', help='Command that must pass (default: typecheck then test)')
    p_add.add_argument('--gh-issue', action='store_true', default=None, help='Create a GitHub issue for the story')
    p_add.set_defaults(func=cmd_add_story)

    # sloop edit-story
    p_edit = subparsers.add_parser('edit-story', help='Edit an existing story')
    p_edit.add_argument('story_id', help='Story ID')
    p_edit.add_argument('--title', help='New title')
    p_edit.add_argument('--description', '-d', help='New description')
    p_edit.add_argument('--priority', '-p', type=float, help='New priority')
    p_edit.add_argument('--criteria', '-a', help='Replace acceptance criteria')
    p_edit.add_argument('--validation-command', help='New validation command')
    done = p_edit.add_mutually_exclusive_group()
    done.add_argument('--done', action='store_true', help='Mark complete')
    done.add_argument('--not-done', action='store_true', help='Mark incomplete')
    p_edit.set_defaults(func=cmd_edit_story)

    # sloop status
    p_status = subparsers.add_parser('status', help='Show PRD progress')
    p_status.set_defaults(func=cmd_status)

    # sloop iterate
    p_iterate = subparsers.add_parser('iterate', help='Run one iteration')
    p_iterate.add_argument('--dry-run', action='store_true', help='Build the prompt without running the agent')
    p_iterate.add_argument('--model', '-m', help='Override MODEL')
    p_iterate.set_defaults(func=cmd_iterate)

    # sloop loop
    p_loop = subparsers.add_parser('loop', help='Run iterations until done or bounded')
    p_loop.add_argument('--max-iterations', '-n', type=int, help='Override MAX_ITERATIONS')
    p_loop.add_argument('--model', '-m', help='Override MODEL')
    p_loop.add_argument('--stop-on-failure', action='store_true', help='Stop at the first failed iteration')
    p_loop.add_argument('--gh-issues', action='store_true', default=None, help='Enable GitHub issue updates')
    p_loop.add_argument('--prefect', action='store_true', help='Run inside a Prefect flow')
    p_loop.set_defaults(func=cmd_loop)

    # sloop iterations
    p_iters = subparsers.add_parser('iterations', help='Query the iteration log')
    p_iters.add_argument('--since', help='Epoch ms or ISO date')
    p_iters.add_argument('--story', '-s', help='Only this story')
    p_iters.add_argument('--job', '-j', help='Only this job')
    p_iters.add_argument('--failures', '-f', action='store_true', help='Only failed iterations')
    p_iters.add_argument('--limit', '-l', type=int, default=20, help='Most recent N (default: 20)')
    p_iters.add_argument('--show-prompt', metavar='STORY_ID', help="Print the story's most recent prompt")
    p_iters.set_defaults(func=cmd_iterations)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, 'func', None):
        parser.print_help()
        return 2

    setup_logging(args, get_workdir(args))
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
