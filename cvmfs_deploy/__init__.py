"""
Script: cvmfs_deploy package
What: Holds the Python workflow that replaced the old Jenkins shell script.
Doing: Groups the CLI entrypoint, the deployment controller, and the helpers it sequences.
Why: Keeps deployment logic readable and testable instead of one long bash file.
Goal: Install changed Galaxy tools into a CVMFS repository and publish them safely.
"""
