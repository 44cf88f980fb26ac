# testing/__init__.py

# This file makes the 'testing' directory a Python package, so test modules can share the stack generators.
