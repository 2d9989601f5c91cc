"""Run the gitops-reconciler command line tool with `python -m gitops_reconciler`."""

from gitops_reconciler.tool.reconciler import main

if __name__ == "__main__":
    main()
