""" Utilities for testing """
