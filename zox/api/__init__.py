"""HTTP surface: REST commands and the SSE event stream."""
