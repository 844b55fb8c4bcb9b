# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import unittest

from convergence._exceptions import ConfigurationError
from convergence._plan import Plan
from convergence._step import Step


def _step(name, *depends_on):
    return Step(name, lambda: True, lambda: None, depends_on=depends_on)


class TestPlan(unittest.TestCase):

    def test_order_kept(self):
        plan = Plan([_step('resize'), _step('install'), _step('enable', 'install')])
        self.assertEqual(plan.names(), ['resize', 'install', 'enable'])
        self.assertEqual([s.name for s in plan], ['resize', 'install', 'enable'])
        self.assertEqual(len(plan), 3)
        self.assertEqual(plan['enable'].depends_on, {'install'})

    def test_empty(self):
        self.assertEqual(len(Plan([])), 0)

    def test_duplicate_name(self):
        with self.assertRaisesRegex(ConfigurationError, "Duplicate step name 'install'"):
            Plan([_step('install'), _step('install')])

    def test_forward_dependency(self):
        with self.assertRaisesRegex(ConfigurationError, "declared after"):
            Plan([_step('enable', 'install'), _step('install')])

    def test_unknown_dependency(self):
        with self.assertRaisesRegex(ConfigurationError, "unknown step 'docker'"):
            Plan([_step('install'), _step('enable', 'docker')])

    def test_self_dependency(self):
        with self.assertRaisesRegex(ConfigurationError, "depends on itself"):
            Plan([_step('install', 'install')])

    def test_cycle_impossible(self):
        with self.assertRaises(ConfigurationError):
            Plan([_step('a', 'b'), _step('b', 'a')])


if __name__ == '__main__':
    unittest.main()
