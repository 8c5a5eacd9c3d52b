"""Remote tool discovery over the Model Context Protocol."""
