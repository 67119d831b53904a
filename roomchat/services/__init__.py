"""
roomchat.services
~~~~~~~~~~~~~~~~~
"""
