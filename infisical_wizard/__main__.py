from infisical_wizard.cli import main

main()
