"""
Worlds the live loop can act in.

- base: The capability surface the loop consumes
- workbench: A small reference world
"""
