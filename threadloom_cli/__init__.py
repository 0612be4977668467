"""Threadloom command line interface."""
