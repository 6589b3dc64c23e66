"""
OAuth integrations: state codec, provider table, connector, record store
and access-token resolver.
"""
