"""
The live decision loop, its configuration and its command line.
"""
