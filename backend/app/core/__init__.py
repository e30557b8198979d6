############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# __init__.py: Core application logic package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Core orchestration logic for Clawster."""
