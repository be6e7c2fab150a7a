from couchstream.cli import cli

cli()
