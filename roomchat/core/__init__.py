"""
roomchat.core
~~~~~~~~~~~~~
"""
