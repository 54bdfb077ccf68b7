"""Provider clients behind a uniform fetch contract."""
