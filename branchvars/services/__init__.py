"""Branch-level services: snapshot/diff manager, debug views, session facade."""
