import unittest


def test_suite():
    """
    Collect all of the tests together in a single suite.
    """
    loader = unittest.TestLoader()
    return loader.discover('oidchannel.test', pattern='test_*.py')
