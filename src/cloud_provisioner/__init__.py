"""Provision cloud nodes and their prerequisite resources, and tear them down safely."""
