"""cmdrelay: a polling command relay between a control plane and executors behind NAT."""

__version__ = "0.1.0"
