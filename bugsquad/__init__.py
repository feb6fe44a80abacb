"""bugsquad - hypothesis-driven debugging swarm.

One coordinator model forms hypotheses; each is tested by a short-lived
investigator process on its own git branch. Status is rebuilt from logs.
"""

__version__ = "0.1.0"
