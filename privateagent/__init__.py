"""PrivateAgent.

A chat agent for a local Ollama server. The model can call local system tools
(shell commands, file I/O, directory listing) through tool-call markers
embedded in its replies, and it sees their results in the conversation.
"""

__version__ = "0.1.0"
