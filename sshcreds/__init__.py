"""sshcreds - SSH credential broker."""
