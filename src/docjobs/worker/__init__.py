"""Worker process: claims jobs and drives them to a terminal outcome."""
