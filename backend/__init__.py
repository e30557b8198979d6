############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: Root package initialization and version definition
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Clawster - Confidential Bot Hosting Orchestrator."""

__version__ = "0.3.0"
