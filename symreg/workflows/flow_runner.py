import logging

from symreg import __version__ as symreg_version
from symreg.utils.logging import get_logger
from symreg.workflows.base import IntrospectiveArgumentParser

_COMMON_ARGS = ('force', 'log_level', 'log_file')


def get_level(lvl):
    """Logging level named `lvl` (case insensitive), INFO if unknown."""
    level = logging.getLevelName(str(lvl).upper())
    return level if isinstance(level, int) else logging.INFO


def add_common_arguments(parser):
    """Add the options shared by every workflow: overwriting and logging."""
    parser.add_argument('--force', dest='force', action='store_true',
                        default=False,
                        help='Force overwriting output files.')
    parser.add_argument('--version', action='version',
                        version='symreg {}'.format(symreg_version))
    parser.add_argument('--log_level', dest='log_level', metavar='string',
                        default='INFO',
                        help='Level of the displayed log messages: '
                             'CRITICAL, ERROR, WARNING, INFO (default), '
                             'DEBUG or NOTSET.')
    parser.add_argument('--log_file', dest='log_file', metavar='string',
                        default='',
                        help='File the log messages are appended to, '
                             'instead of the standard output.')
    return parser


def run_flow(flow, args=None):
    """ Run a workflow from the command line

    The parser is built from ``flow.run`` plus the common options, the
    "symreg" logger is configured from ``--log_level`` and ``--log_file``,
    then ``flow.run`` receives the remaining arguments.

    Parameters
    ----------
    flow : Workflow
    args : list of str, optional
        command line arguments. Default sys.argv[1:].

    Returns
    -------
    The value returned by ``flow.run``.
    """
    parser = IntrospectiveArgumentParser()
    parser.add_workflow(flow)
    add_common_arguments(parser)

    flow_args = parser.get_flow_args(args)
    force, log_level, log_file = (flow_args.pop(key) for key in _COMMON_ARGS)

    get_logger(filename=log_file or None, level=get_level(log_level),
               force=True)
    flow._force_overwrite = force
    return flow.run(**flow_args)
