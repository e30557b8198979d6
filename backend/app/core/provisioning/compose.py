############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# compose.py: Docker compose descriptor generation for bot CVMs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Compose descriptor for a bot CVM.

Secret-bearing variables appear only as ``${KEY}`` placeholders. The
provider hashes this exact text at declare time, and the enclave fills
the placeholders from the encrypted env delivered at commit time.
"""

from typing import Sequence

BOT_HTTP_PORT = 3000


def make_compose(bot_name: str, image: str, env_keys: Sequence[str]) -> str:
    """Render the docker-compose file for a bot."""
    env_lines = [f"      - BOT_NAME={bot_name}"]
    env_lines.extend(f"      - {key}=${{{key}}}" for key in env_keys)

    return "\n".join(
        [
            'version: "3"',
            "services:",
            "  openclaw:",
            f"    image: {image}",
            "    environment:",
            *env_lines,
            "    ports:",
            f'      - "{BOT_HTTP_PORT}:{BOT_HTTP_PORT}"',
            "    restart: unless-stopped",
        ]
    )
