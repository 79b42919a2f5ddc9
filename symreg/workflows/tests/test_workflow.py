import os
from os.path import join as pjoin
from tempfile import TemporaryDirectory

import numpy.testing as npt

from symreg.workflows.align import RegistrationFlow
from symreg.workflows.tests.test_align import write_pair
from symreg.workflows.workflow import Workflow


class AppendFlow(Workflow):

    def run(self, out_dir='', out_file='appended.txt'):
        '''Append a character to a file.

        Parameters
        ----------
        out_dir : string, optional
            Output directory.
        out_file : string, optional
            Name of the file.
        '''
        path = pjoin(out_dir, out_file)
        if not self.set_outputs({'out_file': path, 'out_unused': ''}):
            return False
        with open(path, 'a') as f:
            f.write('x')
        return True


def test_force_overwrite():
    with TemporaryDirectory() as out_dir:
        flow = AppendFlow()
        npt.assert_(flow.run(out_dir=out_dir))
        npt.assert_equal(flow.last_generated_outputs,
                         {'out_file': pjoin(out_dir, 'appended.txt')})
        npt.assert_equal(flow.flat_outputs,
                         [pjoin(out_dir, 'appended.txt')])

        # the existing output is kept without --force
        npt.assert_(not flow.run(out_dir=out_dir))
        with open(pjoin(out_dir, 'appended.txt')) as f:
            npt.assert_equal(f.read(), 'x')

        flow = AppendFlow(force=True)
        npt.assert_(flow.run(out_dir=out_dir))
        with open(pjoin(out_dir, 'appended.txt')) as f:
            npt.assert_equal(f.read(), 'xx')


def test_existing_registration_outputs():
    with TemporaryDirectory() as out_dir:
        image1, image2 = write_pair(out_dir)
        rigid = pjoin(out_dir, 'rigid.txt')
        with open(rigid, 'w') as f:
            f.write('existing')
        flow = RegistrationFlow()
        flow.run(image1, image2, type='rigid', out_dir=out_dir,
                 out_rigid='rigid.txt')
        with open(rigid) as f:
            npt.assert_equal(f.read(), 'existing')


def test_run():
    wf = Workflow()
    npt.assert_raises(NotImplementedError, wf.run, None)


def test_short_name():
    npt.assert_equal(Workflow.get_short_name(), 'Workflow')
    npt.assert_equal(RegistrationFlow.get_short_name(), 'register')
