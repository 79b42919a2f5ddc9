""" Command line parsers built from the docstring of a workflow's run method

The parameters of ``Workflow.run`` and the numpy-style ``Parameters`` section
of its docstring describe the command line: parameters without a default are
positional, parameters with a default are ``--options``, the docstring type
gives the argparse type and a type starting with ``variable`` accepts several
values. A type written as a set, e.g. ``{'mass', 'none'}``, restricts the
option to those strings, which are passed through unchanged. Parameters
whose name starts with ``out_`` are listed under the output arguments.
"""

import argparse
import inspect

from numpydoc.docscrape import NumpyDocString

_REFERENCES = "References: \n"
_DTYPES = (('str', str), ('int', int), ('float', float), ('bool', bool))


def get_args_default(func):
    """Names of the parameters of `func` and the defaults of those that have
    one, `self` excluded."""
    params = [param for param in inspect.signature(func).parameters.values()
              if param.name != 'self']
    names = [param.name for param in params]
    defaults = [param.default for param in params
                if param.default is not inspect.Parameter.empty]
    return names, defaults


def none_or_dtype(dtype):
    """Cast a command line value to `dtype`, letting 'None' through."""
    def inner(value):
        if value.lower() == 'none':
            return 'None'
        return dtype(value)
    return inner


def _is_output(name):
    return name.startswith('out_')


def _parse_choices(text):
    """The strings of a docstring type written as a set, else None."""
    text = text.split('}')[0].strip() if '}' in text else ''
    if not text.startswith('{'):
        return None
    return [choice.strip().strip("\"'") for choice in text[1:].split(',')]


class IntrospectiveArgumentParser(argparse.ArgumentParser):

    def __init__(self, prog=None, usage=None, description=None, epilog=None,
                 parents=(), formatter_class=argparse.RawTextHelpFormatter,
                 prefix_chars='-', fromfile_prefix_chars=None,
                 argument_default=None, conflict_handler='resolve',
                 add_help=True):
        """ Argument parser filled from a workflow by `add_workflow`

        The arguments are those of `argparse.ArgumentParser`; the formatter
        defaults to ``RawTextHelpFormatter`` so the docstring layout is kept,
        and the epilog collects the references of the workflow.
        """
        super().__init__(
            prog=prog, usage=usage, description=description,
            epilog=_REFERENCES if epilog is None else epilog,
            parents=parents, formatter_class=formatter_class,
            prefix_chars=prefix_chars,
            fromfile_prefix_chars=fromfile_prefix_chars,
            argument_default=argument_default,
            conflict_handler=conflict_handler, add_help=add_help)
        self.doc = None
        self._output_params = []
        self._positional_params = []
        self._optional_params = []

    def add_workflow(self, workflow):
        """Add the parameters of ``workflow.run`` to the parser

        Parameters
        ----------
        workflow : symreg.workflows.workflow.Workflow
            its ``argument_groups`` attribute, a sequence of
            ``(prefix, title)`` pairs, gathers the options whose name
            starts with ``prefix`` in a group of their own

        Raises
        ------
        ValueError
            when the docstring and the signature of ``run`` do not list the
            same parameters, or when more than one positional parameter
            takes a variable number of values
        """
        npds = NumpyDocString(inspect.getdoc(workflow.run))
        self.doc = npds['Parameters']
        self.description = '{0}\n\n{1}'.format(
            ' '.join(npds['Summary']), ' '.join(npds['Extended Summary']))
        self._add_references(npds['References'])

        names, defaults = get_args_default(workflow.run)
        documented = dict((param[0], param) for param in self.doc)
        if sorted(documented) != sorted(names) or \
                len(documented) != len(self.doc):
            raise ValueError(
                "%s: the parameters documented in the docstring of the run "
                "method (%s) do not match its signature (%s)."
                % (self.prog, ', '.join(p[0] for p in self.doc),
                   ', '.join(names)))

        n_positional = len(names) - len(defaults)
        self._positional_params = []
        self._optional_params = []
        self._output_params = []
        for i, name in enumerate(names):
            param = documented[name]
            if i < n_positional and not _is_output(name):
                self._positional_params.append(param)
            if i >= n_positional:
                self._optional_params.append(param)
            if _is_output(name):
                self._output_params.append(param)

        groups = [(prefix, self.add_argument_group(title))
                  for prefix, title in getattr(workflow, 'argument_groups',
                                               ())]
        output_group = self.add_argument_group('output arguments(optional)')

        variable_positionals = 0
        for i, name in enumerate(names):
            optional = i >= n_positional
            flags, kwargs = self._argument_spec(documented[name], optional)
            if kwargs.get('nargs') == '+':
                variable_positionals += 1
            if _is_output(name):
                target = output_group
            else:
                target = next((group for prefix, group in groups
                               if optional and name.startswith(prefix)),
                              self)
                if kwargs['action'] != 'store_true' and \
                        'choices' not in kwargs:
                    kwargs['type'] = none_or_dtype(kwargs['type'])
            target.add_argument(*flags, **kwargs)

        if variable_positionals > 1:
            raise ValueError("%s: all the values of a variable positional "
                             "argument are gathered into one list, only one "
                             "positional argument can take a variable number "
                             "of values." % self.prog)

    def _add_references(self, references):
        if not references:
            return
        text = '\n'.join(line or "\n" for line in references)
        idx = self.epilog.find(_REFERENCES) + len(_REFERENCES)
        self.epilog = "{0}{1}\n{2}".format(self.epilog[:idx], text,
                                           self.epilog[idx:])

    def _argument_spec(self, param, optional):
        """argparse flags and keyword arguments of one docstring parameter.
        """
        name, typestr, desc = param
        dtype, variable = self._select_dtype(typestr)
        kwargs = {'help': ' '.join(desc), 'type': dtype, 'action': 'store'}
        choices = _parse_choices(typestr)
        if choices:
            kwargs['choices'] = choices
        if not optional:
            if dtype is bool:
                kwargs.update(type=int, choices=[0, 1])
            if variable:
                kwargs['nargs'] = '+'
            return [name], kwargs

        if dtype is bool:
            kwargs['action'] = 'store_true'
            del kwargs['type']
            self.set_defaults(**{name: False})
        elif not choices:
            kwargs['metavar'] = dtype.__name__
        if variable:
            kwargs['nargs'] = '*'
        return ['--' + name], kwargs

    def _select_dtype(self, text):
        """ Argparse type of a docstring parameter type

        Parameters
        ----------
        text : string
            type part of a docstring parameter, e.g. "variable int, optional"

        Returns
        -------
        arg_type : type
            str for a set of strings, else the last of str, int, float and
            bool named in `text`
        is_nargs : bool
            whether `text` declares a variable number of values
        """
        if _parse_choices(text):
            return str, False
        text = text.lower()
        arg_type = None
        for key, dtype in _DTYPES:
            if key in text:
                arg_type = dtype
        return arg_type, 'variable' in text

    def get_flow_args(self, args=None, namespace=None):
        """Parse `args` into the keyword arguments of the workflow's run
        method. Options left unset are omitted and 'None' becomes None.
        """
        parsed = vars(self.parse_args(args, namespace))
        return dict((key, None if value == 'None' else value)
                    for key, value in parsed.items() if value is not None)

    @property
    def output_parameters(self):
        return self._output_params

    @property
    def positional_parameters(self):
        return self._positional_params

    @property
    def optional_parameters(self):
        return self._optional_params
